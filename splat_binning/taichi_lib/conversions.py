from math import prod
import taichi as ti

import torch


torch_taichi = {
    torch.float32: ti.f32,
    torch.float64: ti.f64,
    torch.int32: ti.i32,
    torch.int64: ti.i64,
}


def taichi_dtype(torch_dtype:torch.dtype):
  if torch_dtype not in torch_taichi:
    raise ValueError(f"No taichi equivalent for {torch_dtype}, expected one of {list(torch_taichi)}")
  return torch_taichi[torch_dtype]


def struct_size(ti_struct:ti.lang.struct.StructType) -> int:
  """ Number of scalars in a (possibly nested) struct when flattened to a vector """
  size = 0
  for v in ti_struct.members.values():
    if isinstance(v, ti.lang.matrix.VectorType):
      size += prod(v.get_shape())
    elif isinstance(v, ti.lang.struct.StructType):
      size += struct_size(v)
    else:
      size += 1
  return int(size)
