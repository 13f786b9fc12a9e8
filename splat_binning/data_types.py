from dataclasses import dataclass
import math
from typing import List
from beartype import beartype
import roma
import torch

from tensordict import TensorClass

from splat_binning.torch_lib.transforms import split_rt, transform44, make_homog, wxyz_to_xyzw, xyzw_to_wxyz
from splat_binning.torch_lib.util import check_finite


@beartype
@dataclass(frozen=True, eq=True, kw_only=True)
class ProjectionConfig:
  # gaussians closer than this to the camera (or behind it) are culled
  clip_thresh: float = 0.01

  # test each tile in the bounding box against the visibility ellipse,
  # otherwise every tile in the 3 sigma bounding box is considered visible
  tight_culling: bool = True

  # validate gaussians (finite values, non zero quaternions) before projection
  check_inputs: bool = True

  def __post_init__(self):
    assert self.clip_thresh > 0, f"clip_thresh must be positive, got {self.clip_thresh}"


def check_packed3d(packed_gaussians: torch.Tensor):
  assert len(packed_gaussians.shape) == 2 and packed_gaussians.shape[1] == 11, f"Expected shape (N, 11), got {packed_gaussians.shape}"

def check_packed_splats(packed_splats: torch.Tensor):
  assert len(packed_splats.shape) == 2 and packed_splats.shape[1] == 9, f"Expected shape (N, 9), got {packed_splats.shape}"


class Gaussians3D(TensorClass):
  position     : torch.Tensor # 3  - xyz
  log_scaling  : torch.Tensor # 3  - scale = exp(log_scaling)
  rotation     : torch.Tensor # 4  - quaternion wxyz
  alpha_logit  : torch.Tensor # 1  - alpha = sigmoid(alpha_logit)
  feature      : torch.Tensor # 3  - rgb (carried through to the projected splats)


  def __post_init__(self):
    assert self.position.shape[1] == 3, f"Expected shape (N, 3), got {self.position.shape}"
    assert self.log_scaling.shape[1] == 3, f"Expected shape (N, 3), got {self.log_scaling.shape}"
    assert self.rotation.shape[1] == 4, f"Expected shape (N, 4), got {self.rotation.shape}"
    assert self.alpha_logit.shape[1] == 1, f"Expected shape (N, 1), got {self.alpha_logit.shape}"
    assert self.feature.shape[1] == 3, f"Expected shape (N, 3), got {self.feature.shape}"


  def packed(self):
    return torch.cat([self.position, self.log_scaling, self.rotation, self.alpha_logit], dim=-1)

  def scaled(self, scale:float) -> 'Gaussians3D':
    return self.replace(
      position=self.position * scale,
      log_scaling=math.log(scale) + self.log_scaling)

  @property
  def scale(self):
    return torch.exp(self.log_scaling)

  @property
  def alpha(self):
    return torch.sigmoid(self.alpha_logit)


  def transform_rigid(self, m:torch.Tensor):
    """ Transform the gaussians by a 4x4 matrix """
    assert m.shape == (4, 4), f"Expected shape (4, 4), got {m.shape}"

    position = transform44(m, make_homog(self.position))[..., 0:3]

    r, _ = split_rt(m)
    rotation = r @ roma.unitquat_to_rotmat(wxyz_to_xyzw(self.rotation))

    return self.replace(position=position,
                        rotation=xyzw_to_wxyz(roma.rotmat_to_unitquat(rotation)))

  @staticmethod
  def concat_batch(gaussians:List['Gaussians3D']) -> 'Gaussians3D':
    dicts = [g.to_dict() for g in gaussians]
    dicts = {k: torch.cat([d[k] for d in dicts], dim=0) for k in dicts[0].keys()}

    batch_size = sum([g.batch_size[0] for g in gaussians])
    return Gaussians3D(**dicts, batch_size=(batch_size,))


def check_gaussians(gaussians:Gaussians3D):
  """ Input validation at the boundary of projection, the kernels assume
  finite values and normalizable quaternions """

  check_finite(gaussians, 'gaussians')

  norms = torch.linalg.norm(gaussians.rotation, dim=1)
  n = (norms < 1e-12).sum().item()
  if n > 0:
    raise ValueError(f'Found {n} zero length rotation quaternions in gaussians')



class ProjectedSplats(TensorClass):
  """ Compacted output of projection, one entry per visible gaussian in claim order """

  position  : torch.Tensor # 2  - pixel xy
  conic     : torch.Tensor # 3  - inverse 2d covariance (xx, xy, yy)
  color     : torch.Tensor # 4  - rgb, alpha (compensated opacity)

  depths    : torch.Tensor # 1  - view space depth (for sorting)
  radius    : torch.Tensor # -  - pixel radius (3 sigma)
  tiles_hit : torch.Tensor # -  - number of tiles overlapped
  index     : torch.Tensor # -  - index of the source gaussian

  def packed(self):
    return torch.cat([self.position, self.conic, self.color], dim=-1)

  @property
  def opacity(self):
    return self.color[:, 3]

  @staticmethod
  def from_packed(packed:torch.Tensor, depths:torch.Tensor, radius:torch.Tensor,
                  tiles_hit:torch.Tensor, index:torch.Tensor) -> 'ProjectedSplats':
    check_packed_splats(packed)

    return ProjectedSplats(
      position=packed[:, 0:2],
      conic=packed[:, 2:5],
      color=packed[:, 5:9],
      depths=depths,
      radius=radius,
      tiles_hit=tiles_hit,
      index=index,
      batch_size=(packed.shape[0],))


def inverse_sigmoid(x:torch.Tensor):
  return torch.log(x / (1 - x))
