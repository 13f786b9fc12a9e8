import time
import torch
from tqdm import tqdm


def timed_benchmark(name, f, iters=100, warmup=10, device='cpu'):
  for _ in range(warmup):
    f()

  cuda = torch.device(device).type == 'cuda'

  if cuda:
    start, end = [torch.cuda.Event(enable_timing=True) for _ in range(2)]
    start.record()
  else:
    start_time = time.perf_counter()

  for _ in tqdm(range(iters), desc=f"{name}"):
    f()

  if cuda:
    end.record()
    torch.cuda.synchronize()
    elapsed = start.elapsed_time(end) / 1000.
  else:
    elapsed = time.perf_counter() - start_time

  print(f'{name}  {iters} iterations in {elapsed:.3f}s at {iters / elapsed:.1f} iters/sec')
  return elapsed


def benchmarked(name, f, iters=100, warmup=10, device='cpu'):
  return timed_benchmark(name, f, iters=iters, warmup=warmup, device=device)
