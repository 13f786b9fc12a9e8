from typing import Sequence
import taichi as ti
import torch

from splat_binning.taichi_queue import TaichiQueue

import warnings
warnings.filterwarnings('ignore')


def init_taichi(debug=False):
  # kernels in tests run on the cpu backend (no-op if already initialized)
  if not TaichiQueue.initialized():
    TaichiQueue.init(arch=ti.cpu, offline_cache=True,
                     log_level=ti.INFO if not debug else ti.DEBUG, debug=debug)


def compare(name, x, y, **kwargs):
  if x.shape != y.shape:
    raise AssertionError(f"{name} shape mismatch {x.shape} != {y.shape}")

  if x.dtype == torch.bool or not x.is_floating_point():
    if not torch.equal(x, y):
      n = (x != y).sum().item()
      raise AssertionError(f"{name} mismatch in {n} of {x.numel()} entries")
    return

  if not torch.allclose(x, y, **kwargs):
    print(f"x={x}")
    print(f"y={y}")

    atol = (x - y).abs().max().item()
    raise AssertionError(f"{name} mismatch with atol={atol}")


def compare_all(test_name, names:Sequence[str], xs:Sequence[torch.Tensor], ys:Sequence[torch.Tensor], **kwargs):
  for name, x, y in zip(names, xs, ys):
    compare(f"{test_name}.{name}", x, y, **kwargs)
