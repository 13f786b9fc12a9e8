from types import SimpleNamespace
import taichi as ti

from splat_binning.taichi_lib.conversions import struct_size


# image tiles are TILE_WIDTH x TILE_WIDTH pixel blocks
TILE_WIDTH = 16
TILE_AREA = TILE_WIDTH * TILE_WIDTH

# threads per block for the per-gaussian kernels
BLOCK_DIM = 256

# added to the diagonal of every projected covariance
COV_BLUR = 0.3

# contributions below this alpha are invisible
INV_ALPHA_THRESHOLD = 255.
ALPHA_THRESHOLD = 1. / INV_ALPHA_THRESHOLD

# jacobian is evaluated within this multiple of the half field of view
FOV_CLAMP = 1.3

DEPTH_EPS = 1e-6
EIGEN_FLOOR = 0.1
SIGMA_CUTOFF = 3.0


def make_library(dtype=ti.f32):
  """
  This function returns a namespace containing all the functions and data types
  used by the projection and tile binning kernels. Building it per dtype provides
  the same code at different precisions, f64 is used for testing against the
  torch reference implementation.
  """

  vec2 = ti.types.vector(2, dtype)
  vec3 = ti.types.vector(3, dtype)
  vec4 = ti.types.vector(4, dtype)

  mat2 = ti.types.matrix(2, 2, dtype)
  mat3 = ti.types.matrix(3, 3, dtype)
  mat4 = ti.types.matrix(4, 4, dtype)

  ivec2 = ti.math.ivec2

  #
  # Packed data types
  #

  @ti.dataclass
  class PackedVec3:
    x : dtype
    y : dtype
    z : dtype

  @ti.func
  def as_vec(p:PackedVec3) -> vec3:
    return vec3(p.x, p.y, p.z)

  @ti.func
  def as_packed(v:vec3) -> PackedVec3:
    return PackedVec3(v.x, v.y, v.z)


  @ti.dataclass
  class Gaussian3D:
    position    : PackedVec3
    log_scaling : PackedVec3
    rotation    : vec4       # quaternion (w, x, y, z)
    alpha_logit : dtype

  vec_g3d = ti.types.vector(struct_size(Gaussian3D), dtype=dtype)

  @ti.func
  def from_vec_g3d(vec:vec_g3d) -> Gaussian3D:
    return Gaussian3D(as_packed(vec[0:3]), as_packed(vec[3:6]), vec[6:10], vec[10])

  Gaussian3D.vec = vec_g3d
  Gaussian3D.from_vec = from_vec_g3d


  @ti.dataclass
  class ProjectedSplat:
    xy    : vec2
    conic : vec3
    color : vec4   # rgb, alpha (compensated opacity)

  vec_splat = ti.types.vector(struct_size(ProjectedSplat), dtype=dtype)

  @ti.func
  def to_vec_splat(xy:vec2, conic:vec3, color:vec4) -> vec_splat:
    return vec_splat(*xy, *conic, *color)

  @ti.func
  def unpack_vec_splat(vec:vec_splat):
    return vec[0:2], vec[2:5], vec[5:9]

  ProjectedSplat.vec = vec_splat
  ProjectedSplat.to_vec = to_vec_splat
  ProjectedSplat.unpack = unpack_vec_splat


  #
  # Linear algebra
  #

  @ti.func
  def quat_to_mat(q:vec4) -> mat3:
    w, x, y, z = q
    x2, y2, z2 = x*x, y*y, z*z

    return mat3(
      1 - 2*y2 - 2*z2, 2*x*y - 2*w*z, 2*x*z + 2*w*y,
      2*x*y + 2*w*z, 1 - 2*x2 - 2*z2, 2*y*z - 2*w*x,
      2*x*z - 2*w*y, 2*y*z + 2*w*x, 1 - 2*x2 - 2*y2
    )

  @ti.func
  def scale_to_mat(scale:vec3) -> mat3:
    return mat3(
      scale.x, 0, 0,
      0, scale.y, 0,
      0, 0, scale.z
    )

  @ti.func
  def inverse_mat2(m:mat2) -> mat2:
    inv_det = 1. / (m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0])
    return inv_det * mat2(
       m[1, 1], -m[0, 1],
      -m[1, 0],  m[0, 0])

  @ti.func
  def ceil_div(a:ti.i32, b:ti.i32) -> ti.i32:
    return (a + (b - 1)) // b

  @ti.func
  def upper(m:mat2) -> vec3:
    return vec3(m[0, 0], m[0, 1], m[1, 1])

  @ti.func
  def symmetric(v:vec3) -> mat2:
    return mat2(v.x, v.y, v.y, v.z)

  @ti.func
  def det_sym2(v:vec3) -> dtype:
    return v.x * v.z - v.y * v.y

  @ti.func
  def quadratic_form(d:vec2, conic:vec3) -> dtype:
    return conic.x * d.x * d.x + 2 * conic.y * d.x * d.y + conic.z * d.y * d.y

  @ti.func
  def sigmoid(x:dtype):
    return 1. / (1. + ti.exp(-x))


  #
  # Projection of gaussians to the image
  #

  @ti.func
  def project_pixel(focal:vec2, p_view:vec3, principal_point:vec2) -> vec2:
    rw = 1. / (p_view.z + dtype(DEPTH_EPS))
    return focal * p_view.xy * rw + principal_point

  @ti.func
  def build_cov3d(scale:vec3, quat:vec4) -> mat3:
    # Sigma = R @ S @ S.transpose() @ R.transpose()
    m = quat_to_mat(quat) @ scale_to_mat(scale)
    return m @ m.transpose()

  @ti.func
  def calc_cov2d(focal:vec2, image_size:vec2, T_camera_world:mat4,
                 p_view:vec3, scale:vec3, quat:vec4) -> vec3:

    # clamp to a margin outside the field of view for a stable jacobian
    lims = dtype(FOV_CLAMP) * (0.5 * image_size / focal)
    t = p_view.z * ti.math.clamp(p_view.xy / p_view.z, -lims, lims)

    rz = 1. / p_view.z
    rz2 = rz * rz

    J = mat3([
      [focal.x * rz, 0, -focal.x * t.x * rz2],
      [0, focal.y * rz, -focal.y * t.y * rz2],
      [0, 0, 0]
    ])

    W = T_camera_world[:3, :3]
    T = J @ W

    cov = T @ build_cov3d(scale, quat) @ T.transpose()
    blur = dtype(COV_BLUR)
    return vec3(cov[0, 0] + blur, cov[0, 1], cov[1, 1] + blur)

  @ti.func
  def cov_to_conic(cov2d:vec3) -> vec3:
    return upper(inverse_mat2(symmetric(cov2d)))

  @ti.func
  def conic_to_cov(conic:vec3) -> vec3:
    return upper(inverse_mat2(symmetric(conic)))

  @ti.func
  def cov_compensation(cov2d:vec3) -> dtype:
    blur = dtype(COV_BLUR)
    det_orig = det_sym2(cov2d - vec3(blur, 0, blur))
    return ti.sqrt(ti.max(0., det_orig / det_sym2(cov2d)))


  #
  # Radius and bounding boxes
  #

  @ti.func
  def radius_from_conic(conic:vec3, opacity:dtype) -> ti.i32:
    # 3 sigma radius of the larger eigenvalue, does not depend on opacity
    cov2d = conic_to_cov(conic)

    det = det_sym2(cov2d)
    b = 0.5 * (cov2d.x + cov2d.z)
    root = ti.sqrt(ti.max(dtype(EIGEN_FLOOR), b * b - det))

    v1 = b + root
    v2 = b - root
    return ti.cast(ti.ceil(SIGMA_CUTOFF * ti.sqrt(ti.max(0., ti.max(v1, v2)))), ti.i32)

  @ti.func
  def get_bbox(center:vec2, half_dims:vec2, bounds:ivec2):
    # min inclusive, max exclusive (and at least one larger than min before clamping)
    min_bound = ti.math.clamp(ti.floor(center - half_dims, ti.i32), 0, bounds)
    max_bound = ti.math.clamp(ti.ceil(center + half_dims + 1, ti.i32), 0, bounds)
    return min_bound, max_bound

  @ti.func
  def get_tile_bbox(pixel_center:vec2, pixel_radius:ti.i32, tile_bounds:ivec2):
    tile_radius = ti.cast(pixel_radius, dtype) / TILE_WIDTH
    return get_bbox(pixel_center / TILE_WIDTH, vec2(tile_radius, tile_radius), tile_bounds)


  #
  # Exact tile visibility
  #

  @ti.func
  def ellipse_overlaps_edge(p0:vec2, p1:vec2, q0:dtype, mp0:vec2, conic:vec3):
    # substitute p(t) = p0 + t (p1 - p0) into the quadratic form and solve = 1
    # q2 == 0 (edge direction in the null space of the conic) is not handled
    dp = p1 - p0

    q2 = quadratic_form(dp, conic)
    q1 = conic.x * mp0.x * dp.x + conic.y * (mp0.x * dp.y + mp0.y * dp.x) + conic.z * mp0.y * dp.y

    overlaps = False
    disc = q1 * q1 - q2 * (q0 - 1.)
    if disc >= 0.:
      root = ti.sqrt(disc)
      t1 = (-q1 - root) / q2
      t2 = (-q1 + root) / q2

      if (t1 >= 0. and t1 <= 1.) or (t2 >= 0. and t2 <= 1.):
        overlaps = True

    return overlaps

  @ti.func
  def ellipse_intersects_aabb(box_center:vec2, box_extent:vec2,
                              ellipse_center:vec2, ellipse_conic:vec3):
    intersects = False

    if (ti.abs(ellipse_center - box_center) <= box_extent).all():
      intersects = True
    else:
      c0 = box_center + vec2(-box_extent.x, -box_extent.y)
      c1 = box_center + vec2(box_extent.x, -box_extent.y)
      c2 = box_center + vec2(box_extent.x, box_extent.y)
      c3 = box_center + vec2(-box_extent.x, box_extent.y)

      m0, m1, m2, m3 = c0 - ellipse_center, c1 - ellipse_center, c2 - ellipse_center, c3 - ellipse_center
      q = vec4(quadratic_form(m0, ellipse_conic), quadratic_form(m1, ellipse_conic),
               quadratic_form(m2, ellipse_conic), quadratic_form(m3, ellipse_conic))

      if (q <= 1.).any():
        intersects = True
      elif (ellipse_overlaps_edge(c0, c1, q[0], m0, ellipse_conic) or
            ellipse_overlaps_edge(c1, c2, q[1], m1, ellipse_conic) or
            ellipse_overlaps_edge(c2, c3, q[2], m2, ellipse_conic) or
            ellipse_overlaps_edge(c3, c0, q[3], m3, ellipse_conic)):
        intersects = True

    return intersects

  @ti.func
  def can_be_visible(tile:ivec2, xy:vec2, conic:vec3, opacity:dtype):
    # opacity * exp(-sigma) == 1 / 255  ->  sigma == log(opacity * 255)
    sigma = ti.log(opacity * INV_ALPHA_THRESHOLD)

    visible = False
    if sigma > 0.:
      half = TILE_WIDTH * 0.5
      tile_extent = vec2(half, half)
      tile_center = ti.cast(tile * TILE_WIDTH, dtype) + tile_extent

      visible = ellipse_intersects_aabb(tile_center, tile_extent, xy, conic / (2. * sigma))
    return visible


  return SimpleNamespace(**locals())
