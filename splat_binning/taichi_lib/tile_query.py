import taichi as ti
from taichi.math import ivec2


def make_tile_query(lib, tight_culling:bool=True):
  """ Query for the tiles covered by a projected gaussian.
  The coarse tile bounding box is derived from the 3 sigma radius, with tight_culling
  each tile in the box is then tested against the visibility ellipse.
  """

  @ti.dataclass
  class TileQuery:
    xy: lib.vec2
    conic: lib.vec3
    opacity: lib.dtype

    min_tile: ivec2
    max_tile: ivec2

    @ti.func
    def test_tile(self, tile:ivec2):
      visible = True
      if ti.static(tight_culling):
        visible = lib.can_be_visible(tile, self.xy, self.conic, self.opacity)
      return visible

    @ti.func
    def count_tiles(self) -> ti.i32:
      count = 0
      for ty in range(self.min_tile.y, self.max_tile.y):
        for tx in range(self.min_tile.x, self.max_tile.x):
          if self.test_tile(ivec2(tx, ty)):
            count += 1

      return count


  @ti.func
  def tile_query(xy:lib.vec2, conic:lib.vec3, opacity:lib.dtype,
                 radius:ti.i32, tile_bounds:ivec2) -> TileQuery:

    min_tile, max_tile = lib.get_tile_bbox(xy, radius, tile_bounds)
    return TileQuery(
      xy=xy, conic=conic, opacity=opacity,
      min_tile=min_tile, max_tile=max_tile)

  return tile_query
