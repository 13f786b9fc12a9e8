from functools import cache
from types import SimpleNamespace
from beartype import beartype
from beartype.typing import Tuple
import taichi as ti
import torch

from splat_binning.data_types import check_packed3d
from splat_binning.taichi_lib import get_library
from splat_binning.taichi_lib.conversions import taichi_dtype
from splat_binning.taichi_queue import TaichiQueue


@cache
def linalg_kernels(torch_dtype=torch.float32):
  lib = get_library(taichi_dtype(torch_dtype))

  @ti.kernel
  def quat_to_mat_kernel(
    quat: ti.types.ndarray(lib.vec4, ndim=1),  # (N, 4) wxyz
    mat: ti.types.ndarray(lib.mat3, ndim=1),   # (N, 3, 3)
  ):
    for i in range(quat.shape[0]):
      mat[i] = lib.quat_to_mat(quat[i])

  @ti.kernel
  def scale_to_mat_kernel(
    scale: ti.types.ndarray(lib.vec3, ndim=1),  # (N, 3)
    mat: ti.types.ndarray(lib.mat3, ndim=1),    # (N, 3, 3)
  ):
    for i in range(scale.shape[0]):
      mat[i] = lib.scale_to_mat(scale[i])

  @ti.kernel
  def inverse_mat2_kernel(
    m: ti.types.ndarray(lib.mat2, ndim=1),        # (N, 2, 2)
    inverse: ti.types.ndarray(lib.mat2, ndim=1),  # (N, 2, 2)
  ):
    for i in range(m.shape[0]):
      inverse[i] = lib.inverse_mat2(m[i])

  @ti.kernel
  def ceil_div_kernel(
    a: ti.types.ndarray(ti.i32, ndim=1),
    b: ti.i32,
    out: ti.types.ndarray(ti.i32, ndim=1),
  ):
    for i in range(a.shape[0]):
      out[i] = lib.ceil_div(a[i], b)

  @ti.kernel
  def unpack_gaussians_kernel(
    packed: ti.types.ndarray(lib.Gaussian3D.vec, ndim=1),  # (N, 11)

    position: ti.types.ndarray(lib.vec3, ndim=1),     # (N, 3)
    log_scaling: ti.types.ndarray(lib.vec3, ndim=1),  # (N, 3)
    rotation: ti.types.ndarray(lib.vec4, ndim=1),     # (N, 4)
    alpha_logit: ti.types.ndarray(lib.dtype, ndim=1), # (N)
  ):
    for i in range(packed.shape[0]):
      g = lib.Gaussian3D.from_vec(packed[i])

      position[i] = lib.as_vec(g.position)
      log_scaling[i] = lib.as_vec(g.log_scaling)
      rotation[i] = g.rotation
      alpha_logit[i] = g.alpha_logit

  return SimpleNamespace(
    quat_to_mat=quat_to_mat_kernel,
    scale_to_mat=scale_to_mat_kernel,
    inverse_mat2=inverse_mat2_kernel,
    ceil_div=ceil_div_kernel,
    unpack_gaussians=unpack_gaussians_kernel)


@beartype
def quat_to_mat(quat:torch.Tensor) -> torch.Tensor:
  """ Rotation matrices (N, 3, 3) from unit quaternions (N, 4) ordered (w, x, y, z) """
  assert quat.ndim == 2 and quat.shape[1] == 4, f"Expected shape (N, 4), got {quat.shape}"

  mat = torch.empty((quat.shape[0], 3, 3), dtype=quat.dtype, device=quat.device)
  TaichiQueue.run_sync(linalg_kernels(quat.dtype).quat_to_mat, quat.contiguous(), mat)
  return mat


@beartype
def scale_to_mat(scale:torch.Tensor) -> torch.Tensor:
  assert scale.ndim == 2 and scale.shape[1] == 3, f"Expected shape (N, 3), got {scale.shape}"

  mat = torch.empty((scale.shape[0], 3, 3), dtype=scale.dtype, device=scale.device)
  TaichiQueue.run_sync(linalg_kernels(scale.dtype).scale_to_mat, scale.contiguous(), mat)
  return mat


@beartype
def inverse_mat2(m:torch.Tensor) -> torch.Tensor:
  assert m.ndim == 3 and m.shape[1:] == (2, 2), f"Expected shape (N, 2, 2), got {m.shape}"

  inverse = torch.empty_like(m)
  TaichiQueue.run_sync(linalg_kernels(m.dtype).inverse_mat2, m.contiguous(), inverse)
  return inverse


@beartype
def ceil_div(a:torch.Tensor, b:int) -> torch.Tensor:
  assert b > 0, f"Expected positive divisor, got {b}"

  a = a.to(torch.int32).contiguous()
  out = torch.empty_like(a)
  TaichiQueue.run_sync(linalg_kernels().ceil_div, a, b, out)
  return out


@beartype
def unpack_gaussians(packed:torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
  """ Read back a packed (N, 11) gaussian record through its taichi struct layout
  Returns:
    position (N, 3), log_scaling (N, 3), rotation (N, 4), alpha_logit (N, 1)
  """
  check_packed3d(packed)
  n, dtype, device = packed.shape[0], packed.dtype, packed.device

  position = torch.empty((n, 3), dtype=dtype, device=device)
  log_scaling = torch.empty((n, 3), dtype=dtype, device=device)
  rotation = torch.empty((n, 4), dtype=dtype, device=device)
  alpha_logit = torch.empty((n, ), dtype=dtype, device=device)

  TaichiQueue.run_sync(linalg_kernels(dtype).unpack_gaussians, packed.contiguous(),
                       position, log_scaling, rotation, alpha_logit)

  return position, log_scaling, rotation, alpha_logit.unsqueeze(1)
