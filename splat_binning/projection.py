from functools import cache
from beartype import beartype
import taichi as ti
from taichi.math import ivec2
import torch

from splat_binning.data_types import Gaussians3D, ProjectedSplats, ProjectionConfig, check_gaussians
from splat_binning.frame import FrameState
from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_lib.generic import BLOCK_DIM
from splat_binning.taichi_lib.tile_query import make_tile_query
from splat_binning.taichi_queue import TaichiQueue

# Ignore this from taichi/pytorch integration
# taichi/lang/kernel_impl.py:763: UserWarning: The .grad attribute of a Tensor
# that is not a leaf Tensor is being accessed.

import warnings
warnings.filterwarnings('ignore', '(.*)that is not a leaf Tensor is being accessed(.*)')


@cache
def project_splats_function(torch_dtype=torch.float32, config:ProjectionConfig=ProjectionConfig()):
  lib = get_library(taichi_dtype(torch_dtype))
  tile_query = make_tile_query(lib, tight_culling=config.tight_culling)

  clip_thresh = config.clip_thresh

  @ti.kernel
  def project_kernel(
    gaussians: ti.types.ndarray(lib.Gaussian3D.vec, ndim=1),  # (N, 11) packed gaussians
    feature: ti.types.ndarray(lib.vec3, ndim=1),              # (N, 3) rgb

    T_camera_world: ti.types.ndarray(lib.mat4, ndim=1),  # (1, 4, 4)
    projection: ti.types.ndarray(lib.vec4, ndim=1),      # (1, 4) fx, fy, cx, cy
    image_size: lib.vec2,
    tile_bounds: ivec2,

    # shared counter, slots are claimed by atomic fetch-and-add
    num_visible: ti.types.ndarray(ti.i32, ndim=1),       # (1)

    # compacted outputs, valid up to num_visible
    splats: ti.types.ndarray(lib.ProjectedSplat.vec, ndim=1),  # (N, 9)
    depths: ti.types.ndarray(lib.dtype, ndim=1),               # (N)
    radii: ti.types.ndarray(ti.i32, ndim=1),                   # (N)
    tiles_hit: ti.types.ndarray(ti.i32, ndim=1),               # (N)
    index: ti.types.ndarray(ti.i32, ndim=1),                   # (N) global id
  ):
    T = T_camera_world[0]
    proj = projection[0]

    focal = lib.vec2(proj[0], proj[1])
    principal_point = lib.vec2(proj[2], proj[3])

    ti.loop_config(block_dim=BLOCK_DIM)
    for idx in range(gaussians.shape[0]):
      g = lib.Gaussian3D.from_vec(gaussians[idx])
      p_view = (T @ lib.vec4(*lib.as_vec(g.position), 1.)).xyz

      if p_view.z > lib.dtype(clip_thresh):
        scale = ti.exp(lib.as_vec(g.log_scaling))
        quat = ti.math.normalize(g.rotation)

        cov2d = lib.calc_cov2d(focal, image_size, T, p_view, scale, quat)

        if lib.det_sym2(cov2d) != 0.:
          conic = lib.cov_to_conic(cov2d)
          xy = lib.project_pixel(focal, p_view, principal_point)
          opacity = lib.sigmoid(g.alpha_logit) * lib.cov_compensation(cov2d)

          radius = lib.radius_from_conic(conic, opacity)
          query = tile_query(xy, conic, opacity, radius, tile_bounds)
          num_tiles = query.count_tiles()

          if num_tiles > 0:
            slot = ti.atomic_add(num_visible[0], 1)

            splats[slot] = lib.ProjectedSplat.to_vec(
              xy, conic, lib.vec4(*feature[idx], opacity))

            depths[slot] = p_view.z
            radii[slot] = radius
            tiles_hit[slot] = num_tiles
            index[slot] = idx


  @beartype
  def f(gaussians:Gaussians3D, frame:FrameState) -> ProjectedSplats:
    n = gaussians.batch_size[0]
    dtype, device = gaussians.position.dtype, gaussians.position.device

    assert frame.device == device, f"FrameState on {frame.device}, gaussians on {device}"
    frame.begin_frame(n)

    splats = torch.empty((n, lib.ProjectedSplat.vec.n), dtype=dtype, device=device)
    depths = torch.empty((n, ), dtype=dtype, device=device)
    radii = torch.empty((n, ), dtype=torch.int32, device=device)
    tiles_hit = torch.empty((n, ), dtype=torch.int32, device=device)
    index = torch.empty((n, ), dtype=torch.int32, device=device)

    if n > 0:
      TaichiQueue.run_sync(project_kernel,
        gaussians.packed().contiguous(), gaussians.feature.to(dtype).contiguous(),
        frame.T_camera_world.to(dtype).unsqueeze(0).contiguous(),
        frame.projection.to(dtype).unsqueeze(0).contiguous(),
        lib.vec2(frame.image_size), ivec2(frame.tile_bounds),
        frame.visible.increment_view(),
        splats, depths, radii, tiles_hit, index)

    # barrier, every slot claimed by the kernel is written after this
    k = frame.visible.synchronize()

    return ProjectedSplats.from_packed(
      splats[:k], depths[:k].unsqueeze(1), radii[:k], tiles_hit[:k], index[:k])

  return f


@beartype
def project_splats(gaussians:Gaussians3D, frame:FrameState,
                   config:ProjectionConfig=ProjectionConfig()) -> ProjectedSplats:
  """
  Project 3D gaussians to the image and count the tiles each can visibly affect.

  Gaussians behind the near plane, with a degenerate 2d covariance or touching no
  tile above the alpha threshold are culled. Visible gaussians claim an output slot
  through the frame's shared counter, so the result is compacted in claim order
  (not input order), use ProjectedSplats.index to map back to the input.

  Parameters:
    gaussians: Gaussians3D, N gaussians with rgb feature
    frame: FrameState, camera and image for this frame (the visible counter is reset)
    config: ProjectionConfig

  Returns:
    ProjectedSplats: K visible splats, K == frame.visible.value
  """
  if config.check_inputs:
    check_gaussians(gaussians)

  with torch.no_grad():
    f = project_splats_function(gaussians.position.dtype, config)
    return f(gaussians, frame)
