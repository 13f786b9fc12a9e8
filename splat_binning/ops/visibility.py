from functools import cache
from types import SimpleNamespace
from beartype import beartype
import taichi as ti
import torch

from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_queue import TaichiQueue


@cache
def visibility_kernels(torch_dtype=torch.float32):
  lib = get_library(taichi_dtype(torch_dtype))

  @ti.kernel
  def can_be_visible_kernel(
    tile: ti.types.ndarray(ti.math.ivec2, ndim=1),    # (N, 2) tile x, y
    xy: ti.types.ndarray(lib.vec2, ndim=1),           # (N, 2)
    conic: ti.types.ndarray(lib.vec3, ndim=1),        # (N, 3)
    opacity: ti.types.ndarray(lib.dtype, ndim=1),     # (N)

    visible: ti.types.ndarray(ti.i32, ndim=1),         # (N) output
  ):
    for i in range(tile.shape[0]):
      visible[i] = lib.can_be_visible(tile[i], xy[i], conic[i], opacity[i])

  @ti.kernel
  def intersects_aabb_kernel(
    box_center: ti.types.ndarray(lib.vec2, ndim=1),      # (N, 2)
    box_extent: ti.types.ndarray(lib.vec2, ndim=1),      # (N, 2) half size
    ellipse_center: ti.types.ndarray(lib.vec2, ndim=1),  # (N, 2)
    ellipse_conic: ti.types.ndarray(lib.vec3, ndim=1),   # (N, 3)

    intersects: ti.types.ndarray(ti.i32, ndim=1),         # (N) output
  ):
    for i in range(box_center.shape[0]):
      intersects[i] = lib.ellipse_intersects_aabb(
        box_center[i], box_extent[i], ellipse_center[i], ellipse_conic[i])

  @ti.kernel
  def overlaps_edge_kernel(
    p0: ti.types.ndarray(lib.vec2, ndim=1),              # (N, 2)
    p1: ti.types.ndarray(lib.vec2, ndim=1),              # (N, 2)
    ellipse_center: ti.types.ndarray(lib.vec2, ndim=1),  # (N, 2)
    ellipse_conic: ti.types.ndarray(lib.vec3, ndim=1),   # (N, 3)

    overlaps: ti.types.ndarray(ti.i32, ndim=1),           # (N) output
  ):
    for i in range(p0.shape[0]):
      mp0 = p0[i] - ellipse_center[i]
      q0 = lib.quadratic_form(mp0, ellipse_conic[i])
      overlaps[i] = lib.ellipse_overlaps_edge(p0[i], p1[i], q0, mp0, ellipse_conic[i])

  return SimpleNamespace(
    can_be_visible=can_be_visible_kernel,
    intersects_aabb=intersects_aabb_kernel,
    overlaps_edge=overlaps_edge_kernel)


def _flag_output(n:int, device:torch.device) -> torch.Tensor:
  return torch.empty((n, ), dtype=torch.int32, device=device)


@beartype
def can_be_visible(tile:torch.Tensor, xy:torch.Tensor, conic:torch.Tensor, opacity:torch.Tensor) -> torch.Tensor:
  """
  Exact test of whether a tile can receive a contribution above the alpha threshold (1/255)
  from a projected gaussian, by intersecting the tile box with the visibility ellipse.

  Parameters:
    tile: (N, 2) int tile coordinates (x, y)
    xy: (N, 2) gaussian pixel centers
    conic: (N, 3) inverse 2d covariances
    opacity: (N) opacities

  Returns:
    visible: (N) bool
  """
  assert tile.ndim == 2 and tile.shape[1] == 2, f"Expected tile shape (N, 2), got {tile.shape}"
  assert xy.shape == tile.shape, f"Expected xy shape {tile.shape}, got {xy.shape}"

  visible = _flag_output(tile.shape[0], tile.device)
  TaichiQueue.run_sync(visibility_kernels(xy.dtype).can_be_visible,
    tile.to(torch.int32).contiguous(), xy.contiguous(), conic.to(xy.dtype).contiguous(),
    opacity.to(xy.dtype).contiguous(), visible)
  return visible.to(torch.bool)


@beartype
def ellipse_intersects_aabb(box_center:torch.Tensor, box_extent:torch.Tensor,
                            ellipse_center:torch.Tensor, ellipse_conic:torch.Tensor) -> torch.Tensor:
  """ Whether the ellipse (x - center)^T conic (x - center) <= 1 intersects an axis aligned box """
  assert box_center.ndim == 2 and box_center.shape[1] == 2, f"Expected shape (N, 2), got {box_center.shape}"
  dtype = box_center.dtype

  intersects = _flag_output(box_center.shape[0], box_center.device)
  TaichiQueue.run_sync(visibility_kernels(dtype).intersects_aabb,
    box_center.contiguous(), box_extent.to(dtype).contiguous(),
    ellipse_center.to(dtype).contiguous(), ellipse_conic.to(dtype).contiguous(), intersects)
  return intersects.to(torch.bool)


@beartype
def ellipse_overlaps_edge(p0:torch.Tensor, p1:torch.Tensor,
                          ellipse_center:torch.Tensor, ellipse_conic:torch.Tensor) -> torch.Tensor:
  """ Whether the segment p0 -> p1 crosses the boundary of the ellipse """
  assert p0.ndim == 2 and p0.shape[1] == 2, f"Expected shape (N, 2), got {p0.shape}"
  dtype = p0.dtype

  overlaps = _flag_output(p0.shape[0], p0.device)
  TaichiQueue.run_sync(visibility_kernels(dtype).overlaps_edge,
    p0.contiguous(), p1.to(dtype).contiguous(),
    ellipse_center.to(dtype).contiguous(), ellipse_conic.to(dtype).contiguous(), overlaps)
  return overlaps.to(torch.bool)
