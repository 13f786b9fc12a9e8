from .tile_mapper import map_to_tiles, TileOverlaps

__all__ = ['map_to_tiles', 'TileOverlaps']
