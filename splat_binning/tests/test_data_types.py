import math
import pytest
import roma
import torch
import torch.nn.functional as F

from splat_binning.data_types import Gaussians3D, ProjectedSplats, check_gaussians
from splat_binning.ops import linalg
from splat_binning.tests.random_data import random_3d_gaussians, random_frame
from splat_binning.tests.util import compare, init_taichi
from splat_binning.torch_lib.transforms import join_rt, wxyz_to_xyzw

init_taichi()


def random_gaussians(n=100, seed=0) -> Gaussians3D:
  torch.manual_seed(seed)
  g = random_3d_gaussians(n, random_frame()).to(torch.float64)
  # unit length at double precision
  return g.replace(rotation=F.normalize(g.rotation, dim=1))


def test_packed_layout():
  g = random_gaussians()
  packed = g.packed()
  assert packed.shape == (100, 11)

  position, log_scaling, rotation, alpha_logit = linalg.unpack_gaussians(packed)
  compare("position", position, g.position)
  compare("log_scaling", log_scaling, g.log_scaling)
  compare("rotation", rotation, g.rotation)
  compare("alpha_logit", alpha_logit, g.alpha_logit)


def test_activations():
  g = random_gaussians()
  assert (g.scale > 0).all()
  assert ((g.alpha > 0) & (g.alpha < 1)).all()


def test_scaled():
  g = random_gaussians()
  s = g.scaled(2.)

  compare("position", s.position, g.position * 2)
  compare("scale", s.scale, g.scale * 2)


def test_transform_rigid():
  g = random_gaussians()

  q = torch.tensor([math.cos(0.25), 0., 0., math.sin(0.25)], dtype=torch.float64)
  T = join_rt(roma.unitquat_to_rotmat(wxyz_to_xyzw(q)), torch.tensor([1., 2., 3.], dtype=torch.float64))

  compare("unit", g.rotation.norm(dim=1), torch.ones(100, dtype=torch.float64), atol=1e-12)

  moved = g.transform_rigid(T)
  compare("position", moved.position, g.position @ T[:3, :3].T + T[:3, 3], atol=1e-10)

  R = linalg.quat_to_mat(g.rotation)
  compare("rotation", linalg.quat_to_mat(moved.rotation), T[:3, :3] @ R, atol=1e-10)


def test_concat_batch():
  g1, g2 = random_gaussians(10), random_gaussians(20, seed=1)
  g = Gaussians3D.concat_batch([g1, g2])

  assert g.batch_size == (30,)
  compare("position", g.position[10:], g2.position)


def test_check_gaussians():
  g = random_gaussians()
  check_gaussians(g)

  with pytest.raises(ValueError):
    check_gaussians(g.replace(log_scaling=torch.full_like(g.log_scaling, float('inf'))))

  rotation = g.rotation.clone()
  rotation[3] = 0.
  with pytest.raises(ValueError):
    check_gaussians(g.replace(rotation=rotation))


def test_projected_splats_packed():
  packed = torch.randn(5, 9)
  splats = ProjectedSplats.from_packed(packed, depths=torch.rand(5, 1),
    radius=torch.ones(5, dtype=torch.int32), tiles_hit=torch.ones(5, dtype=torch.int32),
    index=torch.arange(5, dtype=torch.int32))

  compare("packed", splats.packed(), packed)
  compare("opacity", splats.opacity, packed[:, 8])
  assert splats.depths.shape == (5, 1)
  assert splats[1:3].depths.shape == (2, 1)


if __name__ == '__main__':
  test_packed_layout()
  test_activations()
  test_scaled()
  test_transform_rigid()
  test_concat_batch()
  test_check_gaussians()
  test_projected_splats_packed()
