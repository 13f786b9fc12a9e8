import math
import torch
from tqdm import tqdm

from splat_binning.ops import geometry, radius
from splat_binning.tests.random_data import random_conics
from splat_binning.tests.util import compare, init_taichi
from splat_binning.torch_lib import projection as torch_proj

init_taichi()


def conic_of_cov(cov):
  return geometry.cov_to_conic(torch.tensor(cov, dtype=torch.float64))


def test_isotropic_radius():
  # cov = 100 I, sigma = 10, the floored discriminant adds sqrt(0.1) to the eigenvalue
  conic = conic_of_cov([[100., 0., 100.]])
  r = radius.radius_from_conic(conic, torch.tensor([0.5], dtype=torch.float64))
  assert r.tolist() == [31]


def test_radius_scaling(iters=10):
  # scaling the covariance by k scales the radius by sqrt(k) (up to ceil)
  for seed in tqdm(range(iters), desc="radius_scaling"):
    torch.manual_seed(seed)
    cov = torch_proj.cov_to_conic(random_conics(100, min_scale=2., max_scale=20.))
    opacity = torch.full((100,), 0.5, dtype=torch.float64)

    r1 = radius.radius_from_conic(geometry.cov_to_conic(cov), opacity)
    r4 = radius.radius_from_conic(geometry.cov_to_conic(cov * 4), opacity)

    assert ((r4 - 2 * r1).abs() <= 2).all(), f"{r1} {r4}"


def test_radius_ignores_opacity():
  torch.manual_seed(0)
  conic = random_conics(100)

  r1 = radius.radius_from_conic(conic, torch.full((100,), 0.01, dtype=torch.float64))
  r2 = radius.radius_from_conic(conic, torch.full((100,), 0.99, dtype=torch.float64))
  compare("radius", r1, r2)


def test_radius_reference(iters=10):
  for seed in tqdm(range(iters), desc="radius_reference"):
    torch.manual_seed(seed)
    conic = random_conics(1000)
    opacity = torch.rand(1000, dtype=torch.float64)

    compare("radius", radius.radius_from_conic(conic, opacity), torch_proj.radius_from_conic(conic))


def test_radius_floor():
  # eigen discriminant is floored, a tiny isotropic covariance still gets a radius
  conic = conic_of_cov([[1e-4, 0., 1e-4]])
  r = radius.radius_from_conic(conic, torch.tensor([0.5], dtype=torch.float64))
  assert r.item() == math.ceil(3 * math.sqrt(1e-4 + math.sqrt(0.1)))


def test_bbox():
  center = torch.tensor([[10., 10.], [2., 2.]], dtype=torch.float64)
  half_dims = torch.tensor([[2., 2.], [3., 3.]], dtype=torch.float64)

  lower, upper = radius.get_bbox(center, half_dims, (100, 100))

  assert lower.tolist() == [[8, 8], [0, 0]]
  assert upper.tolist() == [[13, 13], [6, 6]]


def test_bbox_corner():
  # box at the origin, max is one past ceil(c + h)
  lower, upper = radius.get_bbox(
    torch.tensor([[0., 0.]], dtype=torch.float64), torch.tensor([[5., 5.]], dtype=torch.float64), (10, 10))

  assert lower.tolist() == [[0, 0]]
  assert upper.tolist() == [[6, 6]]


def test_bbox_clamped():
  center = torch.tensor([[95., 50.], [-20., -20.]], dtype=torch.float64)
  half_dims = torch.tensor([[10., 1.], [2., 2.]], dtype=torch.float64)

  lower, upper = radius.get_bbox(center, half_dims, (100, 60))

  assert lower.tolist() == [[85, 49], [0, 0]]
  assert upper.tolist() == [[100, 52], [0, 0]]


def test_bbox_reference():
  torch.manual_seed(0)
  center = torch.rand(1000, 2, dtype=torch.float64) * 120 - 10
  half_dims = torch.rand(1000, 2, dtype=torch.float64) * 20

  lower, upper = radius.get_bbox(center, half_dims, (100, 80))
  lower_ref, upper_ref = torch_proj.get_bbox(center, half_dims, (100, 80))

  compare("lower", lower, lower_ref)
  compare("upper", upper, upper_ref)
  assert ((lower >= 0) & (upper >= lower)).all()


def test_tile_bbox():
  xy = torch.tensor([[128., 128.]], dtype=torch.float64)
  r = torch.tensor([76], dtype=torch.int32)

  lower, upper = radius.tile_bbox(xy, r, (16, 16))

  # 8 +- 4.75 tiles, max exclusive
  assert lower.tolist() == [[3, 3]]
  assert upper.tolist() == [[14, 14]]


if __name__ == '__main__':
  test_isotropic_radius()
  test_radius_scaling()
  test_radius_ignores_opacity()
  test_radius_reference()
  test_radius_floor()
  test_bbox()
  test_bbox_corner()
  test_bbox_clamped()
  test_bbox_reference()
  test_tile_bbox()
