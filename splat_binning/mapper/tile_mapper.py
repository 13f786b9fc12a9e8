from functools import cache
from typing import NamedTuple
from beartype import beartype
import taichi as ti
from taichi.math import ivec2
import torch

from splat_binning.data_types import ProjectedSplats, ProjectionConfig
from splat_binning.frame import FrameState
from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_lib.generic import BLOCK_DIM
from splat_binning.taichi_lib.tile_query import make_tile_query
from splat_binning.taichi_queue import TaichiQueue


class TileOverlaps(NamedTuple):
  tile_id: torch.Tensor      # (M) tile index ty * tiles_x + tx
  splat_id: torch.Tensor     # (M) index into the projected splats
  offsets: torch.Tensor      # (K) first overlap of each splat (exclusive sum of tiles_hit)
  tile_counts: torch.Tensor  # (tiles_y, tiles_x) number of splats overlapping each tile

  @property
  def num_overlaps(self) -> int:
    return self.tile_id.shape[0]


@cache
def tile_mapper(torch_dtype=torch.float32, config:ProjectionConfig=ProjectionConfig()):
  lib = get_library(taichi_dtype(torch_dtype))
  tile_query = make_tile_query(lib, tight_culling=config.tight_culling)

  @ti.kernel
  def overlaps_kernel(
    splats: ti.types.ndarray(lib.ProjectedSplat.vec, ndim=1),  # (K, 9)
    radius: ti.types.ndarray(ti.i32, ndim=1),                  # (K)
    tiles_hit: ti.types.ndarray(ti.i32, ndim=1),               # (K)
    offsets: ti.types.ndarray(ti.i32, ndim=1),                 # (K)
    tile_bounds: ivec2,

    # outputs (M), M = sum(tiles_hit)
    tile_id: ti.types.ndarray(ti.i32, ndim=1),
    splat_id: ti.types.ndarray(ti.i32, ndim=1),
  ):
    ti.loop_config(block_dim=BLOCK_DIM)
    for idx in range(splats.shape[0]):
      xy, conic, color = lib.ProjectedSplat.unpack(splats[idx])
      query = tile_query(xy, conic, color.w, radius[idx], tile_bounds)

      key_idx = offsets[idx]
      end_idx = key_idx + tiles_hit[idx]

      for ty in range(query.min_tile.y, query.max_tile.y):
        for tx in range(query.min_tile.x, query.max_tile.x):
          if key_idx < end_idx and query.test_tile(ivec2(tx, ty)):
            tile_id[key_idx] = tx + ty * tile_bounds.x
            splat_id[key_idx] = idx
            key_idx += 1


  @beartype
  def f(splats:ProjectedSplats, frame:FrameState) -> TileOverlaps:
    tiles_x, tiles_y = frame.tile_bounds
    device = splats.position.device

    tiles_hit = splats.tiles_hit.to(torch.int32).contiguous()
    cum_counts = torch.cumsum(tiles_hit, dim=0, dtype=torch.int32)

    total_overlap = int(cum_counts[-1].item()) if cum_counts.shape[0] > 0 else 0
    offsets = cum_counts - tiles_hit

    tile_id = torch.empty((total_overlap, ), dtype=torch.int32, device=device)
    splat_id = torch.empty((total_overlap, ), dtype=torch.int32, device=device)

    if total_overlap > 0:
      TaichiQueue.run_sync(overlaps_kernel,
        splats.packed().contiguous(), splats.radius.to(torch.int32).contiguous(),
        tiles_hit, offsets, ivec2(frame.tile_bounds),
        tile_id, splat_id)

    tile_counts = torch.bincount(tile_id.long(), minlength=tiles_x * tiles_y)
    return TileOverlaps(tile_id, splat_id, offsets,
                        tile_counts.to(torch.int32).view(tiles_y, tiles_x))

  return f


@beartype
def map_to_tiles(splats:ProjectedSplats, frame:FrameState,
                 config:ProjectionConfig=ProjectionConfig()) -> TileOverlaps:
  """ Maps projected splats to the tiles they can visibly affect (unsorted).
    Parameters:
      splats: ProjectedSplats from project_splats, with tiles_hit counted using the same config
      frame: FrameState, for the tile grid
      config: ProjectionConfig, tight_culling must match the config used for projection

    Returns:
      TileOverlaps, overlaps of splat i are tile_id[offsets[i]:offsets[i] + tiles_hit[i]]
  """
  with torch.no_grad():
    mapper = tile_mapper(splats.position.dtype, config)
    return mapper(splats, frame)
