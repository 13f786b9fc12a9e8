import math
import roma
import torch
from tqdm import tqdm

from splat_binning.ops import linalg
from splat_binning.tests.util import compare, init_taichi
from splat_binning.torch_lib import transforms
from splat_binning.torch_lib import projection as torch_proj

init_taichi()


def random_quats(n, dtype=torch.float64):
  q = torch.randn(n, 4, dtype=dtype)
  return q / torch.norm(q, dim=1, keepdim=True)


def test_identity_quat():
  q = torch.tensor([[1., 0., 0., 0.]], dtype=torch.float64)
  compare("identity", linalg.quat_to_mat(q)[0], torch.eye(3, dtype=torch.float64))


def test_quat_to_mat(iters=20):
  for seed in tqdm(range(iters), desc="quat_to_mat"):
    torch.manual_seed(seed)
    q = random_quats(100)

    m = linalg.quat_to_mat(q)
    eye = torch.eye(3, dtype=q.dtype).expand_as(m)

    compare("orthonormal", m @ m.transpose(1, 2), eye, atol=1e-10)
    compare("det", torch.linalg.det(m), torch.ones(100, dtype=q.dtype), atol=1e-10)

    compare("roma", m, roma.unitquat_to_rotmat(transforms.wxyz_to_xyzw(q)), atol=1e-10)
    compare("torch", m, transforms.quat_to_mat(q), atol=1e-10)


def test_quat_sign():
  # q and -q give the same rotation
  q = random_quats(10)
  compare("sign", linalg.quat_to_mat(q), linalg.quat_to_mat(-q), atol=1e-12)


def test_scale_to_mat():
  s = torch.tensor([[1., 2., 3.], [0.5, 0.25, 4.]], dtype=torch.float64)
  compare("scale", linalg.scale_to_mat(s), torch.diag_embed(s))


def test_inverse_mat2(iters=20):
  for seed in tqdm(range(iters), desc="inverse_mat2"):
    torch.manual_seed(seed)
    m = torch.randn(100, 2, 2, dtype=torch.float64) + 3 * torch.eye(2, dtype=torch.float64)

    inv = linalg.inverse_mat2(m)
    compare("inverse", inv, torch.linalg.inv(m), atol=1e-10)
    compare("reference", inv, torch_proj.inverse_mat2(m), atol=1e-10)


def test_inverse_mat2_diagonal():
  m = torch.tensor([[[2., 0.], [0., 4.]]], dtype=torch.float64)
  compare("diagonal", linalg.inverse_mat2(m), torch.tensor([[[0.5, 0.], [0., 0.25]]], dtype=torch.float64))


def test_ceil_div():
  a = torch.tensor([0, 1, 15, 16, 17, 100, 256, 257], dtype=torch.int32)
  expected = torch.tensor([math.ceil(x / 16) for x in a.tolist()], dtype=torch.int32)

  compare("ceil_div", linalg.ceil_div(a, 16), expected)


def test_unpack_gaussians():
  torch.manual_seed(0)
  packed = torch.randn(50, 11, dtype=torch.float64)

  position, log_scaling, rotation, alpha_logit = linalg.unpack_gaussians(packed)

  compare("position", position, packed[:, 0:3])
  compare("log_scaling", log_scaling, packed[:, 3:6])
  compare("rotation", rotation, packed[:, 6:10])
  compare("alpha_logit", alpha_logit, packed[:, 10:11])


if __name__ == '__main__':
  test_identity_quat()
  test_quat_to_mat()
  test_quat_sign()
  test_scale_to_mat()
  test_inverse_mat2()
  test_inverse_mat2_diagonal()
  test_ceil_div()
  test_unpack_gaussians()
