from beartype.typing import Tuple

import torch
import torch.nn.functional as F

from splat_binning.data_types import Gaussians3D, ProjectionConfig
from splat_binning.frame import FrameState
from splat_binning.taichi_lib.generic import (
  COV_BLUR, DEPTH_EPS, EIGEN_FLOOR, FOV_CLAMP, INV_ALPHA_THRESHOLD, SIGMA_CUTOFF, TILE_WIDTH)
from splat_binning.torch_lib.transforms import make_homog, quat_to_mat, scale_to_mat, transform44

# Reference implementation of projection and tile culling in plain torch,
# conics and covariances are packed upper triangles (xx, xy, yy)


def symmetric(v:torch.Tensor) -> torch.Tensor:
  x, y, z = v.unbind(-1)
  return torch.stack([x, y, y, z], -1).reshape(*v.shape[:-1], 2, 2)

def upper(m:torch.Tensor) -> torch.Tensor:
  return torch.stack([m[..., 0, 0], m[..., 0, 1], m[..., 1, 1]], -1)

def det_sym2(v:torch.Tensor) -> torch.Tensor:
  return v[..., 0] * v[..., 2] - v[..., 1] * v[..., 1]

def inverse_mat2(m:torch.Tensor) -> torch.Tensor:
  a, b, c, d = m[..., 0, 0], m[..., 0, 1], m[..., 1, 0], m[..., 1, 1]
  inv_det = 1. / (a * d - b * c)
  return (inv_det.unsqueeze(-1) * torch.stack([d, -b, -c, a], -1)).reshape(m.shape)

def quadratic_form(d:torch.Tensor, conic:torch.Tensor) -> torch.Tensor:
  dx, dy = d[..., 0], d[..., 1]
  return conic[..., 0] * dx * dx + 2 * conic[..., 1] * dx * dy + conic[..., 2] * dy * dy


def project_pixel(points_in_camera:torch.Tensor, projection:torch.Tensor) -> torch.Tensor:
  f, c = projection[0:2], projection[2:4]
  rw = 1. / (points_in_camera[:, 2:3] + DEPTH_EPS)
  return f * points_in_camera[:, 0:2] * rw + c


def build_cov3d(scale:torch.Tensor, rotation:torch.Tensor) -> torch.Tensor:
  m = quat_to_mat(rotation) @ scale_to_mat(scale)
  return m @ m.transpose(1, 2)


def calc_cov2d(points_in_camera:torch.Tensor, scale:torch.Tensor, rotation:torch.Tensor,
               T_camera_world:torch.Tensor, projection:torch.Tensor,
               image_size:Tuple[int, int]) -> torch.Tensor:
  """ EWA projection of the world space covariance, blurred, as (xx, xy, yy) """
  f = projection[0:2]
  size = torch.tensor(image_size, dtype=f.dtype, device=f.device)

  lims = FOV_CLAMP * (0.5 * size / f)
  z = points_in_camera[:, 2]
  t = z.unsqueeze(1) * torch.clamp(points_in_camera[:, 0:2] / z.unsqueeze(1), -lims, lims)

  rz = 1. / z
  zero = torch.zeros_like(z)

  J = torch.stack([
    f[0] * rz, zero, -f[0] * t[:, 0] * rz * rz,
    zero, f[1] * rz, -f[1] * t[:, 1] * rz * rz,
  ], dim=1).reshape(-1, 2, 3)

  T = J @ T_camera_world[:3, :3]
  cov = T @ build_cov3d(scale, rotation) @ T.transpose(1, 2)

  return upper(cov) + torch.tensor([COV_BLUR, 0, COV_BLUR], dtype=cov.dtype, device=cov.device)


def cov_to_conic(cov2d:torch.Tensor) -> torch.Tensor:
  return upper(inverse_mat2(symmetric(cov2d)))


def cov_compensation(cov2d:torch.Tensor) -> torch.Tensor:
  blur = torch.tensor([COV_BLUR, 0, COV_BLUR], dtype=cov2d.dtype, device=cov2d.device)
  return torch.sqrt(torch.clamp_min(det_sym2(cov2d - blur) / det_sym2(cov2d), 0.))


def radius_from_conic(conic:torch.Tensor) -> torch.Tensor:
  cov2d = cov_to_conic(conic)

  b = 0.5 * (cov2d[:, 0] + cov2d[:, 2])
  root = torch.sqrt(torch.clamp_min(b * b - det_sym2(cov2d), EIGEN_FLOOR))

  v = torch.clamp_min(torch.maximum(b + root, b - root), 0.)
  return torch.ceil(SIGMA_CUTOFF * torch.sqrt(v)).to(torch.int32)


def get_bbox(center:torch.Tensor, half_dims:torch.Tensor,
             bounds:Tuple[int, int]) -> Tuple[torch.Tensor, torch.Tensor]:
  upper_bounds = torch.tensor(bounds, dtype=torch.int32, device=center.device)
  zero = torch.zeros_like(upper_bounds)

  lower = torch.floor(center - half_dims).to(torch.int32)
  upper = torch.ceil(center + half_dims + 1).to(torch.int32)

  return (torch.clamp(lower, zero, upper_bounds),
          torch.clamp(upper, zero, upper_bounds))


def tile_bbox(xy:torch.Tensor, radius:torch.Tensor,
              tile_bounds:Tuple[int, int]) -> Tuple[torch.Tensor, torch.Tensor]:
  tile_radius = (radius.to(xy.dtype) / TILE_WIDTH).unsqueeze(1).expand_as(xy)
  return get_bbox(xy / TILE_WIDTH, tile_radius, tile_bounds)


def ellipse_overlaps_edge(p0:torch.Tensor, p1:torch.Tensor, q0:torch.Tensor,
                          mp0:torch.Tensor, conic:torch.Tensor) -> torch.Tensor:
  dp = p1 - p0

  q2 = quadratic_form(dp, conic)
  q1 = (conic[:, 0] * mp0[:, 0] * dp[:, 0]
        + conic[:, 1] * (mp0[:, 0] * dp[:, 1] + mp0[:, 1] * dp[:, 0])
        + conic[:, 2] * mp0[:, 1] * dp[:, 1])

  disc = q1 * q1 - q2 * (q0 - 1.)
  root = torch.sqrt(torch.clamp_min(disc, 0.))

  t1 = (-q1 - root) / q2
  t2 = (-q1 + root) / q2

  def in_unit(t):
    return (t >= 0.) & (t <= 1.)

  return (disc >= 0.) & (in_unit(t1) | in_unit(t2))


def ellipse_intersects_aabb(box_center:torch.Tensor, box_extent:torch.Tensor,
                            ellipse_center:torch.Tensor, ellipse_conic:torch.Tensor) -> torch.Tensor:
  inside = ((ellipse_center - box_center).abs() <= box_extent).all(-1)

  ex, ey = box_extent[:, 0], box_extent[:, 1]
  corners = [box_center + torch.stack([sx * ex, sy * ey], -1)
             for sx, sy in [(-1, -1), (1, -1), (1, 1), (-1, 1)]]

  offsets = [c - ellipse_center for c in corners]
  q = [quadratic_form(m, ellipse_conic) for m in offsets]

  corner_inside = torch.stack(q, -1) <= 1.

  edges = [ellipse_overlaps_edge(corners[i], corners[(i + 1) % 4], q[i], offsets[i], ellipse_conic)
           for i in range(4)]

  return inside | corner_inside.any(-1) | torch.stack(edges, -1).any(-1)


def can_be_visible(tile:torch.Tensor, xy:torch.Tensor, conic:torch.Tensor, opacity:torch.Tensor) -> torch.Tensor:
  sigma = torch.log(opacity * INV_ALPHA_THRESHOLD)

  half = TILE_WIDTH * 0.5
  extent = torch.full_like(xy, half)
  center = tile.to(xy.dtype) * TILE_WIDTH + half

  # avoid dividing by non positive sigma, those are never visible
  scaled_conic = conic / (2. * torch.clamp_min(sigma, 1e-12)).unsqueeze(1)
  return (sigma > 0.) & ellipse_intersects_aabb(center, extent, xy, scaled_conic)


def tile_overlaps(xy:torch.Tensor, conic:torch.Tensor, opacity:torch.Tensor, radius:torch.Tensor,
                  tile_bounds:Tuple[int, int], tight_culling:bool=True) -> Tuple[torch.Tensor, torch.Tensor]:
  """ Enumerate (splat, tile) pairs in row major tile order per splat
  Returns:
    splat_id (M), tile (M, 2) as (tx, ty)
  """
  lower, upper = tile_bbox(xy, radius, tile_bounds)

  splat_ids, tiles = [], []
  for i in range(xy.shape[0]):
    (x0, y0), (x1, y1) = lower[i].tolist(), upper[i].tolist()
    ty, tx = torch.meshgrid(torch.arange(y0, y1, device=xy.device),
                            torch.arange(x0, x1, device=xy.device), indexing='ij')

    tile = torch.stack([tx.reshape(-1), ty.reshape(-1)], -1).to(torch.int32)
    if tight_culling and tile.shape[0] > 0:
      n = tile.shape[0]
      visible = can_be_visible(tile, xy[i].expand(n, 2), conic[i].expand(n, 3), opacity[i].expand(n))
      tile = tile[visible]

    splat_ids.append(torch.full((tile.shape[0], ), i, dtype=torch.int64, device=xy.device))
    tiles.append(tile)

  if len(tiles) == 0:
    return (torch.empty((0, ), dtype=torch.int64, device=xy.device),
            torch.empty((0, 2), dtype=torch.int32, device=xy.device))

  return torch.cat(splat_ids), torch.cat(tiles)


def project_splats(gaussians:Gaussians3D, frame:FrameState,
                   config:ProjectionConfig=ProjectionConfig()) -> dict:
  """ Reference projection, results are in input order (not claim order)
  Returns dict of:
    index (K), position (K, 2), conic (K, 3), color (K, 4), depths (K, 1), radius (K), tiles_hit (K)
  """
  dtype = gaussians.position.dtype
  T_camera_world = frame.T_camera_world.to(dtype)
  projection = frame.projection.to(dtype)

  points_in_camera = transform44(T_camera_world, make_homog(gaussians.position))[:, :3]
  in_front = points_in_camera[:, 2] > config.clip_thresh

  cov2d = calc_cov2d(points_in_camera, gaussians.scale, F.normalize(gaussians.rotation, dim=-1),
                     T_camera_world, projection, frame.image_size)
  valid = in_front & (det_sym2(cov2d) != 0.)

  idx = valid.nonzero(as_tuple=True)[0]
  cov2d, points_in_camera = cov2d[idx], points_in_camera[idx]

  conic = cov_to_conic(cov2d)
  xy = project_pixel(points_in_camera, projection)
  opacity = gaussians.alpha[idx, 0] * cov_compensation(cov2d)
  radius = radius_from_conic(conic)

  splat_id, _ = tile_overlaps(xy, conic, opacity, radius, frame.tile_bounds, config.tight_culling)
  tiles_hit = torch.bincount(splat_id, minlength=idx.shape[0]).to(torch.int32)

  visible = tiles_hit > 0
  color = torch.cat([gaussians.feature[idx].to(dtype), opacity.unsqueeze(1)], dim=1)

  return dict(
    index=idx[visible].to(torch.int32),
    position=xy[visible],
    conic=conic[visible],
    color=color[visible],
    depths=points_in_camera[visible, 2:3],
    radius=radius[visible],
    tiles_hit=tiles_hit[visible],
  )
