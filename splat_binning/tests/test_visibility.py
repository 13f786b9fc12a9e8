import math
import torch
from tqdm import tqdm

from splat_binning.ops import visibility
from splat_binning.taichi_lib.generic import ALPHA_THRESHOLD, TILE_WIDTH
from splat_binning.tests.random_data import random_conics
from splat_binning.tests.util import compare, init_taichi
from splat_binning.torch_lib import projection as torch_proj

init_taichi()


def f64(x):
  return torch.tensor(x, dtype=torch.float64)

def visible(tile, xy, conic, opacity):
  return visibility.can_be_visible(torch.tensor([tile], dtype=torch.int32),
    f64([xy]), f64([conic]), f64([opacity])).item()


def test_below_threshold():
  # ellipse centered in the tile, but the peak alpha is below the threshold
  assert not visible((0, 0), (8., 8.), (0.01, 0., 0.01), 0.9 / 255)
  assert not visible((0, 0), (8., 8.), (0.01, 0., 0.01), 0.5 / 255)
  assert visible((0, 0), (8., 8.), (0.01, 0., 0.01), 2. / 255)


def test_center_inside():
  assert visible((0, 0), (8., 8.), (1., 0., 1.), 0.5)
  assert visible((2, 1), (40., 20.), (1., 0., 1.), 0.5)

  # on the boundary of the tile
  assert visible((1, 0), (16., 0.), (100., 0., 100.), 0.5)


def test_far_away():
  assert not visible((0, 0), (500., 500.), (0.01, 0., 0.01), 0.99)
  assert not visible((3, 3), (8., 8.), (1., 0., 1.), 0.99)


def test_corner_inside():
  # center outside the tile, corner (16, 16) within the visible ellipse
  assert visible((0, 0), (18., 18.), (0.1, 0., 0.1), 1.0)


def test_edge_crossing():
  # ellipse of radius 5 below the tile crosses the edge y = 0 but contains no corner
  box_center, box_extent = f64([[8., 8.]]), f64([[8., 8.]])
  center = f64([[8., -3.]])

  assert visibility.ellipse_intersects_aabb(box_center, box_extent, center, f64([[1/25, 0., 1/25]])).item()
  assert not visibility.ellipse_intersects_aabb(box_center, box_extent, center, f64([[1/4, 0., 1/4]])).item()

  assert visibility.ellipse_overlaps_edge(f64([[0., 0.]]), f64([[16., 0.]]), center, f64([[1/25, 0., 1/25]])).item()
  assert not visibility.ellipse_overlaps_edge(f64([[0., 4.]]), f64([[16., 4.]]), center, f64([[1/25, 0., 1/25]])).item()

  # the same through the alpha threshold, radius 5 at full opacity
  c = 2 * math.log(1. / ALPHA_THRESHOLD) / 25
  assert visible((0, 0), (8., -3.), (c, 0., c), 1.0)
  assert not visible((0, 0), (8., -3.), (c, 0., c), 0.02)


def test_edge_in_null_space():
  # degenerate conic: the edge direction lies in the null space (q2 == 0),
  # there is no finite root and the edge is reported as not overlapping
  # even though the segment lies inside the slab |x| <= 1
  overlaps = visibility.ellipse_overlaps_edge(
    f64([[0.5, -8.]]), f64([[0.5, 8.]]), f64([[0., 0.]]), f64([[1., 0., 0.]]))

  assert not overlaps.item()


def random_splats(n, dtype=torch.float64):
  xy = torch.rand(n, 2, dtype=dtype) * 128
  conic = random_conics(n, min_scale=0.5, max_scale=20., dtype=dtype)
  opacity = torch.rand(n, dtype=dtype)
  tile = torch.randint(0, 8, (n, 2), dtype=torch.int32)
  return tile, xy, conic, opacity


def test_visibility_reference(iters=20):
  for seed in tqdm(range(iters), desc="can_be_visible"):
    torch.manual_seed(seed)
    tile, xy, conic, opacity = random_splats(2000)

    compare("visible", visibility.can_be_visible(tile, xy, conic, opacity),
            torch_proj.can_be_visible(tile, xy, conic, opacity))


def max_alpha_in_tile(tile, xy, conic, opacity, steps=33):
  # alpha sampled on a dense grid over the closed tile box
  t = torch.linspace(0, TILE_WIDTH, steps, dtype=xy.dtype)
  gy, gx = torch.meshgrid(t, t, indexing='ij')
  points = torch.stack([gx.reshape(-1), gy.reshape(-1)], -1)

  d = (tile.to(xy.dtype) * TILE_WIDTH).unsqueeze(1) + points.unsqueeze(0) - xy.unsqueeze(1)
  q = torch_proj.quadratic_form(d, conic.unsqueeze(1))
  return (opacity.unsqueeze(1) * torch.exp(-0.5 * q)).max(1).values


def test_no_false_negatives(iters=10):
  for seed in tqdm(range(iters), desc="no_false_negatives"):
    torch.manual_seed(seed)
    tile, xy, conic, opacity = random_splats(1000)

    vis = visibility.can_be_visible(tile, xy, conic, opacity)
    alpha = max_alpha_in_tile(tile, xy, conic, opacity)

    missed = (alpha > ALPHA_THRESHOLD * (1 + 1e-6)) & ~vis
    assert not missed.any(), f"{missed.sum().item()} tiles with visible alpha culled"


if __name__ == '__main__':
  test_below_threshold()
  test_center_inside()
  test_far_away()
  test_corner_inside()
  test_edge_crossing()
  test_edge_in_null_space()
  test_visibility_reference()
  test_no_false_negatives()
