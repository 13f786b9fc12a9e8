from functools import cache
from types import SimpleNamespace
from typing import NamedTuple
from beartype import beartype
import taichi as ti
import torch

from splat_binning.frame import FrameState
from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_queue import TaichiQueue


class CovarianceProjection(NamedTuple):
  cov3d: torch.Tensor         # (N, 3, 3) world space covariance
  cov2d: torch.Tensor         # (N, 3)    image space covariance (xx, xy, yy), blurred
  conic: torch.Tensor         # (N, 3)    inverse of cov2d
  compensation: torch.Tensor  # (N)       opacity compensation for the blur


@cache
def geometry_kernels(torch_dtype=torch.float32):
  lib = get_library(taichi_dtype(torch_dtype))

  @ti.kernel
  def project_pixel_kernel(
    points_in_camera: ti.types.ndarray(lib.vec3, ndim=1),  # (N, 3)
    projection: ti.types.ndarray(lib.vec4, ndim=1),        # (1, 4) fx, fy, cx, cy
    xy: ti.types.ndarray(lib.vec2, ndim=1),                # (N, 2)
  ):
    proj = projection[0]
    for i in range(points_in_camera.shape[0]):
      xy[i] = lib.project_pixel(proj[0:2], points_in_camera[i], proj[2:4])


  @ti.kernel
  def covariance_kernel(
    points_in_camera: ti.types.ndarray(lib.vec3, ndim=1),  # (N, 3)
    scale: ti.types.ndarray(lib.vec3, ndim=1),             # (N, 3)
    rotation: ti.types.ndarray(lib.vec4, ndim=1),          # (N, 4) wxyz

    T_camera_world: ti.types.ndarray(lib.mat4, ndim=1),    # (1, 4, 4)
    projection: ti.types.ndarray(lib.vec4, ndim=1),        # (1, 4)
    image_size: lib.vec2,

    # outputs
    cov3d: ti.types.ndarray(lib.mat3, ndim=1),             # (N, 3, 3)
    cov2d: ti.types.ndarray(lib.vec3, ndim=1),             # (N, 3)
    conic: ti.types.ndarray(lib.vec3, ndim=1),             # (N, 3)
    compensation: ti.types.ndarray(lib.dtype, ndim=1),     # (N)
  ):
    proj = projection[0]
    T = T_camera_world[0]

    for i in range(points_in_camera.shape[0]):
      cov3d[i] = lib.build_cov3d(scale[i], rotation[i])

      cov = lib.calc_cov2d(proj[0:2], image_size, T,
                           points_in_camera[i], scale[i], rotation[i])
      cov2d[i] = cov
      conic[i] = lib.cov_to_conic(cov)
      compensation[i] = lib.cov_compensation(cov)


  @ti.kernel
  def cov_to_conic_kernel(
    cov2d: ti.types.ndarray(lib.vec3, ndim=1),
    conic: ti.types.ndarray(lib.vec3, ndim=1),
  ):
    for i in range(cov2d.shape[0]):
      conic[i] = lib.cov_to_conic(cov2d[i])

  @ti.kernel
  def compensation_kernel(
    cov2d: ti.types.ndarray(lib.vec3, ndim=1),
    compensation: ti.types.ndarray(lib.dtype, ndim=1),
  ):
    for i in range(cov2d.shape[0]):
      compensation[i] = lib.cov_compensation(cov2d[i])

  return SimpleNamespace(
    project_pixel=project_pixel_kernel,
    covariance=covariance_kernel,
    cov_to_conic=cov_to_conic_kernel,
    compensation=compensation_kernel)


def check_points(points:torch.Tensor, name:str, n:int=3):
  assert points.ndim == 2 and points.shape[1] == n, f"Expected {name} with shape (N, {n}), got {points.shape}"


@beartype
def project_pixels(points_in_camera:torch.Tensor, frame:FrameState) -> torch.Tensor:
  """ Perspective projection of camera space points to pixel coordinates (N, 2) """
  check_points(points_in_camera, 'points_in_camera')

  xy = torch.empty((points_in_camera.shape[0], 2), dtype=points_in_camera.dtype, device=points_in_camera.device)
  TaichiQueue.run_sync(geometry_kernels(points_in_camera.dtype).project_pixel,
    points_in_camera.contiguous(),
    frame.projection.to(points_in_camera.dtype).unsqueeze(0).contiguous(),
    xy)
  return xy


@beartype
def project_covariance(points_in_camera:torch.Tensor, scale:torch.Tensor,
                       rotation:torch.Tensor, frame:FrameState) -> CovarianceProjection:
  """
  Build the world space covariance of each gaussian from scale and rotation,
  and propagate it to the image using the perspective jacobian (EWA splatting).

  Parameters:
    points_in_camera: (N, 3) gaussian means in camera space
    scale: (N, 3) positive scale
    rotation: (N, 4) unit quaternion (w, x, y, z)
    frame: FrameState for the view matrix, intrinsics and image size

  Returns:
    CovarianceProjection with cov3d, cov2d, conic and compensation
  """
  check_points(points_in_camera, 'points_in_camera')
  check_points(scale, 'scale')
  check_points(rotation, 'rotation', n=4)

  n, dtype, device = points_in_camera.shape[0], points_in_camera.dtype, points_in_camera.device
  lib = get_library(taichi_dtype(dtype))

  cov3d = torch.empty((n, 3, 3), dtype=dtype, device=device)
  cov2d = torch.empty((n, 3), dtype=dtype, device=device)
  conic = torch.empty((n, 3), dtype=dtype, device=device)
  compensation = torch.empty((n, ), dtype=dtype, device=device)

  TaichiQueue.run_sync(geometry_kernels(dtype).covariance,
    points_in_camera.contiguous(), scale.contiguous(), rotation.contiguous(),
    frame.T_camera_world.to(dtype).unsqueeze(0).contiguous(),
    frame.projection.to(dtype).unsqueeze(0).contiguous(),
    lib.vec2(frame.image_size),
    cov3d, cov2d, conic, compensation)

  return CovarianceProjection(cov3d, cov2d, conic, compensation)


@beartype
def cov_to_conic(cov2d:torch.Tensor) -> torch.Tensor:
  check_points(cov2d, 'cov2d')

  conic = torch.empty_like(cov2d)
  TaichiQueue.run_sync(geometry_kernels(cov2d.dtype).cov_to_conic, cov2d.contiguous(), conic)
  return conic


@beartype
def cov_compensation(cov2d:torch.Tensor) -> torch.Tensor:
  check_points(cov2d, 'cov2d')

  compensation = torch.empty((cov2d.shape[0], ), dtype=cov2d.dtype, device=cov2d.device)
  TaichiQueue.run_sync(geometry_kernels(cov2d.dtype).compensation, cov2d.contiguous(), compensation)
  return compensation
