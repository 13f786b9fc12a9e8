from beartype.typing import Tuple
import torch


def wxyz_to_xyzw(q:torch.Tensor) -> torch.Tensor:
  return torch.cat([q[..., 1:4], q[..., 0:1]], dim=-1)

def xyzw_to_wxyz(q:torch.Tensor) -> torch.Tensor:
  return torch.cat([q[..., 3:4], q[..., 0:3]], dim=-1)


def quat_to_mat(quat:torch.Tensor) -> torch.Tensor:
  """ Hamilton unit quaternion(s) ordered (w, x, y, z) to rotation matrices """
  w, x, y, z = quat.unbind(-1)
  x2, y2, z2 = x*x, y*y, z*z

  m = torch.stack([
    1 - 2*y2 - 2*z2, 2*x*y - 2*w*z, 2*x*z + 2*w*y,
    2*x*y + 2*w*z, 1 - 2*x2 - 2*z2, 2*y*z - 2*w*x,
    2*x*z - 2*w*y, 2*y*z + 2*w*x, 1 - 2*x2 - 2*y2
  ], dim=-1)

  return m.reshape(*quat.shape[:-1], 3, 3)


def scale_to_mat(scale:torch.Tensor) -> torch.Tensor:
  return torch.diag_embed(scale)


def make_homog(points:torch.Tensor) -> torch.Tensor:
  shape = list(points.shape)
  shape[-1] = 1
  return torch.concatenate([points, torch.ones(shape, dtype=points.dtype, device=points.device)], axis=-1)

def transform44(transform:torch.Tensor, points:torch.Tensor) -> torch.Tensor:
  points = points.reshape([-1, 4, 1])
  return (transform @ points).reshape(-1, 4)


def split_rt(
    transform: torch.Tensor,  # (..., 4, 4)
) -> Tuple[torch.Tensor, torch.Tensor]:
    R = transform[..., :3, :3]
    t = transform[..., :3, 3]
    return R.contiguous(), t.contiguous()

def join_rt(R:torch.Tensor, t:torch.Tensor) -> torch.Tensor:
  assert R.shape[-2:] == (3, 3), f"Expected (..., 3, 3) rotation, got {R.shape}"
  assert t.shape[-1] == 3, f"Expected (..., 3) translation, got {t.shape}"

  T = torch.eye(4, device=R.device, dtype=R.dtype).expand(*R.shape[:-2], 4, 4).clone()
  T[..., :3, :3] = R
  T[..., :3, 3] = t
  return T
