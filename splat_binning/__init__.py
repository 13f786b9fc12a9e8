from .data_types import Gaussians3D, ProjectedSplats, ProjectionConfig
from .frame import FrameState, VisibleCounter
from .projection import project_splats
from .mapper.tile_mapper import map_to_tiles, TileOverlaps

from .taichi_lib.generic import TILE_WIDTH, TILE_AREA, BLOCK_DIM, ALPHA_THRESHOLD

from . import ops
from .taichi_queue import TaichiQueue


__all__ = [
  'project_splats',
  'map_to_tiles',
  'TileOverlaps',

  'Gaussians3D',
  'ProjectedSplats',
  'ProjectionConfig',

  'FrameState',
  'VisibleCounter',

  'TILE_WIDTH',
  'TILE_AREA',
  'BLOCK_DIM',
  'ALPHA_THRESHOLD',

  'ops',
  'TaichiQueue',
]
