from functools import cache
from numbers import Integral
from types import SimpleNamespace
from beartype import beartype
from beartype.typing import Tuple
import taichi as ti
import torch

from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_queue import TaichiQueue


@cache
def radius_kernels(torch_dtype=torch.float32):
  lib = get_library(taichi_dtype(torch_dtype))

  @ti.kernel
  def radius_kernel(
    conic: ti.types.ndarray(lib.vec3, ndim=1),         # (N, 3)
    opacity: ti.types.ndarray(lib.dtype, ndim=1),      # (N)
    radius: ti.types.ndarray(ti.i32, ndim=1),          # (N) output radii
  ):
    for i in range(conic.shape[0]):
      radius[i] = lib.radius_from_conic(conic[i], opacity[i])

  @ti.kernel
  def bbox_kernel(
    center: ti.types.ndarray(lib.vec2, ndim=1),        # (N, 2)
    half_dims: ti.types.ndarray(lib.vec2, ndim=1),     # (N, 2)
    bounds: ti.math.ivec2,

    min_bound: ti.types.ndarray(ti.math.ivec2, ndim=1),  # (N, 2)
    max_bound: ti.types.ndarray(ti.math.ivec2, ndim=1),  # (N, 2)
  ):
    for i in range(center.shape[0]):
      lower, upper = lib.get_bbox(center[i], half_dims[i], bounds)
      min_bound[i] = lower
      max_bound[i] = upper

  @ti.kernel
  def tile_bbox_kernel(
    xy: ti.types.ndarray(lib.vec2, ndim=1),            # (N, 2) pixel centers
    radius: ti.types.ndarray(ti.i32, ndim=1),          # (N) pixel radii
    tile_bounds: ti.math.ivec2,

    min_tile: ti.types.ndarray(ti.math.ivec2, ndim=1),  # (N, 2)
    max_tile: ti.types.ndarray(ti.math.ivec2, ndim=1),  # (N, 2)
  ):
    for i in range(xy.shape[0]):
      lower, upper = lib.get_tile_bbox(xy[i], radius[i], tile_bounds)
      min_tile[i] = lower
      max_tile[i] = upper

  return SimpleNamespace(
    radius=radius_kernel,
    bbox=bbox_kernel,
    tile_bbox=tile_bbox_kernel)


@beartype
def radius_from_conic(conic:torch.Tensor, opacity:torch.Tensor) -> torch.Tensor:
  """
  Pixel radius of projected gaussians, 3 standard deviations along the major axis

  Parameters:
    conic: (N, 3) inverse 2d covariance
    opacity: (N) opacity - unused, the radius is opacity independent

  Returns:
    radius: (N) int32
  """
  assert conic.ndim == 2 and conic.shape[1] == 3, f"Expected shape (N, 3), got {conic.shape}"
  assert opacity.shape == conic.shape[:1], f"Expected opacity shape ({conic.shape[0]},), got {opacity.shape}"

  radius = torch.empty((conic.shape[0], ), dtype=torch.int32, device=conic.device)
  TaichiQueue.run_sync(radius_kernels(conic.dtype).radius,
                       conic.contiguous(), opacity.to(conic.dtype).contiguous(), radius)
  return radius


@beartype
def get_bbox(center:torch.Tensor, half_dims:torch.Tensor,
             bounds:Tuple[Integral, Integral]) -> Tuple[torch.Tensor, torch.Tensor]:
  """ Integer boxes (min inclusive, max exclusive) clamped to [0, bounds] """
  assert center.ndim == 2 and center.shape[1] == 2, f"Expected shape (N, 2), got {center.shape}"
  assert half_dims.shape == center.shape, f"Expected half_dims shape {center.shape}, got {half_dims.shape}"

  min_bound = torch.empty(center.shape, dtype=torch.int32, device=center.device)
  max_bound = torch.empty(center.shape, dtype=torch.int32, device=center.device)

  TaichiQueue.run_sync(radius_kernels(center.dtype).bbox,
    center.contiguous(), half_dims.to(center.dtype).contiguous(), ti.math.ivec2(bounds),
    min_bound, max_bound)
  return min_bound, max_bound


@beartype
def tile_bbox(xy:torch.Tensor, radius:torch.Tensor,
              tile_bounds:Tuple[Integral, Integral]) -> Tuple[torch.Tensor, torch.Tensor]:
  """ Tile range covered by a pixel center and radius, in tile units """
  assert xy.ndim == 2 and xy.shape[1] == 2, f"Expected shape (N, 2), got {xy.shape}"

  min_tile = torch.empty(xy.shape, dtype=torch.int32, device=xy.device)
  max_tile = torch.empty(xy.shape, dtype=torch.int32, device=xy.device)

  TaichiQueue.run_sync(radius_kernels(xy.dtype).tile_bbox,
    xy.contiguous(), radius.to(torch.int32).contiguous(), ti.math.ivec2(tile_bounds),
    min_tile, max_tile)
  return min_tile, max_tile
