from dataclasses import dataclass, field, replace
from numbers import Integral
from beartype.typing import Optional, Tuple
from beartype import beartype
import taichi as ti
import torch

from splat_binning.taichi_lib.generic import TILE_WIDTH
from splat_binning.taichi_queue import TaichiQueue


def ceil_div(a:int, b:int) -> int:
  return (a + (b - 1)) // b


def num_sh_coeffs(degree:int) -> int:
  return (degree + 1) ** 2

def sh_degree_from_coeffs(coeffs_per_channel:int) -> int:
  degrees = {num_sh_coeffs(d):d for d in range(5)}
  if coeffs_per_channel not in degrees:
    raise ValueError(f"Invalid number of sh bases {coeffs_per_channel}, expected one of {list(degrees)}")
  return degrees[coeffs_per_channel]


class VisibleCounter:
  """ Number of visible splats for a frame.

  The projection kernel claims output slots with an atomic fetch-and-add on the tensor
  given by increment_view(). The count can only be read as an integer once synchronize()
  has waited for every increment of the frame to complete.
  """

  def __init__(self, device:torch.device | str = 'cpu'):
    self._count = torch.zeros(1, dtype=torch.int32, device=device)
    self._synchronized = True

  @property
  def device(self):
    return self._count.device

  def reset(self):
    self._count.zero_()
    self._synchronized = True

  def increment_view(self) -> torch.Tensor:
    self._synchronized = False
    return self._count

  def synchronize(self) -> int:
    TaichiQueue.run_sync(ti.sync)
    if self._count.is_cuda:
      torch.cuda.synchronize(self._count.device)

    self._synchronized = True
    return self.value

  @property
  def synchronized(self) -> bool:
    return self._synchronized

  @property
  def value(self) -> int:
    if not self._synchronized:
      raise RuntimeError("visible count read before synchronize(), increments may still be in flight")
    return int(self._count.item())

  def to(self, device) -> 'VisibleCounter':
    counter = VisibleCounter(device)
    counter._count.copy_(self._count)
    counter._synchronized = self._synchronized
    return counter

  def __repr__(self):
    count = self._count.item() if self._synchronized else "pending"
    return f"VisibleCounter({count})"


@beartype
@dataclass
class FrameState:
  """ Per frame camera and image configuration shared by all projection workers,
  read only during a frame except for the visible counter """

  projection: torch.Tensor # (4) - [fx, fy, cx, cy]
  T_camera_world  : torch.Tensor # (4, 4) camera view matrix
  image_size: Tuple[Integral, Integral]

  num_points: int = 0
  sh_degree: int = 0
  background: Tuple[float, float, float] = (0., 0., 0.)

  visible: Optional[VisibleCounter] = field(default=None)


  def __post_init__(self):
    assert self.projection.shape == (4, ), f"Expected shape (4,), got {self.projection.shape}"
    assert self.T_camera_world.shape == (4, 4), f"Expected shape (4, 4), got {self.T_camera_world.shape}"

    assert len(self.image_size) == 2
    assert all(x > 0 for x in self.image_size), f"Expected positive image size, got {self.image_size}"
    assert (self.focal_length > 0).all(), f"Expected positive focal length, got {self.focal_length}"
    assert 0 <= self.sh_degree <= 4, f"Expected sh_degree in 0..4, got {self.sh_degree}"

    if self.visible is None:
      self.visible = VisibleCounter(self.device)

  @property
  def tile_bounds(self) -> Tuple[int, int]:
    w, h = self.image_size
    return (ceil_div(int(w), TILE_WIDTH), ceil_div(int(h), TILE_WIDTH))

  @property
  def num_tiles(self) -> int:
    tx, ty = self.tile_bounds
    return tx * ty

  @property
  def device(self):
    return self.projection.device

  @property
  def dtype(self):
    return self.projection.dtype

  @property
  def focal_length(self):
    return self.projection[0:2]

  @property
  def principal_point(self):
    return self.projection[2:4]

  @property
  def T_image_camera(self):
    fx, fy, cx, cy = self.projection.tolist()
    m = [[fx, 0, cx],
        [0, fy, cy],
        [0, 0, 1]]
    return torch.tensor(m, device=self.device, dtype=self.dtype)

  @property
  def T_image_world(self):
    T_image_camera = torch.eye(4, device=self.device, dtype=self.dtype)
    T_image_camera[0:3, 0:3] = self.T_image_camera
    return T_image_camera @ self.T_camera_world

  @property
  def camera_position(self):
    T_world_camera = torch.inverse(self.T_camera_world)
    return T_world_camera[0:3, 3]

  def begin_frame(self, num_points:int) -> 'FrameState':
    self.num_points = num_points
    self.visible.reset()
    return self

  def scale_image(self, scale: float):
    image_size = (int(self.image_size[0] * scale), int(self.image_size[1] * scale))
    return replace(self, image_size=image_size, projection=self.projection * scale,
                   visible=VisibleCounter(self.device))

  def to(self, device=None, dtype=None):
    projection = self.projection.to(device=device, dtype=dtype)
    return replace(self,
      projection=projection,
      T_camera_world=self.T_camera_world.to(device=device, dtype=dtype),
      visible=self.visible.to(projection.device))

  def __repr__(self):
    w, h = self.image_size
    tx, ty = self.tile_bounds
    fx, fy, cx, cy = self.projection.detach().cpu().tolist()

    pos_str = ", ".join([f"{x:.3f}" for x in self.camera_position.tolist()])
    return (f"FrameState({w}x{h} ({tx}x{ty} tiles), fx={fx:.4f}, fy={fy:.4f}, cx={cx:.4f}, cy={cy:.4f}, "
            f"position=({pos_str}), points={self.num_points}, visible={self.visible})")
