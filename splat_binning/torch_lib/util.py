from beartype import beartype
from beartype.typing import Iterator, Mapping, Sequence, Tuple
import torch
from tensordict.tensorclass import is_tensorclass


def named_tensors(t, name:str) -> Iterator[Tuple[str, torch.Tensor]]:
  """ Walk nested sequences, mappings and tensorclasses yielding (path, tensor) """
  if isinstance(t, torch.Tensor):
    yield name, t

  elif isinstance(t, Sequence) and not isinstance(t, str):
    for i, v in enumerate(t):
      yield from named_tensors(v, f'{name}[{i}]')

  elif isinstance(t, Mapping) or is_tensorclass(t):
    for k, v in t.items():
      yield from named_tensors(v, f'{name}.{k}')


@beartype
def count_nonfinite(t, name:str) -> dict:
  return {k: (~torch.isfinite(v)).sum().item()
          for k, v in named_tensors(t, name) if v.is_floating_point()}


@beartype
def check_finite(t, name:str, warn:bool=False):
  counts = count_nonfinite(t, name)
  if len(counts) == 0:
    raise ValueError(f'No floating point tensors found in {name} ({type(t)}) to check')

  non_finite = {k: n for k, n in counts.items() if n > 0}
  if len(non_finite) > 0:
    if warn:
      print(f'Non-finite entries: {non_finite}')
    else:
      raise ValueError(f'Non-finite entries: {non_finite}')
