import argparse
from functools import partial

import torch
import taichi as ti

from splat_binning.benchmarks.util import benchmarked
from splat_binning.data_types import ProjectionConfig
from splat_binning.mapper.tile_mapper import map_to_tiles
from splat_binning.projection import project_splats
from splat_binning.taichi_queue import TaichiQueue
from splat_binning.tests.random_data import random_3d_gaussians, random_frame


def parse_args(args=None):
  parser = argparse.ArgumentParser()

  parser.add_argument('--image_size', type=str, default='1024,768')
  parser.add_argument('--device', type=str, default='cpu')
  parser.add_argument('--n', type=int, default=10000)
  parser.add_argument('--seed', type=int, default=0)
  parser.add_argument('--iters', type=int, default=10)
  parser.add_argument('--loose', action='store_true', help="disable tight culling (bounding box tiles only)")
  parser.add_argument('--debug', action='store_true')

  args = parser.parse_args(args)
  args.image_size = tuple(map(int, args.image_size.split(',')))
  return args


def bench_projection(args):
  arch = ti.cuda if args.device.startswith('cuda') else ti.cpu
  TaichiQueue.init(arch=arch, offline_cache=True,
                   log_level=ti.INFO if not args.debug else ti.DEBUG, debug=args.debug)

  torch.manual_seed(args.seed)

  with torch.no_grad():
    frame = random_frame(image_size=args.image_size)
    gaussians = random_3d_gaussians(args.n, frame)
    config = ProjectionConfig(tight_culling=not args.loose)

    gaussians, frame = gaussians.to(args.device), frame.to(args.device)

    splats = project_splats(gaussians, frame, config)
    overlaps = map_to_tiles(splats, frame, config)

    print(args)
    print(f"benchmarking {args.n} points ({frame.visible.value} visible, {overlaps.num_overlaps} tile overlaps)")

    project = partial(project_splats, gaussians, frame, config)
    benchmarked('project_splats', project, iters=args.iters, warmup=1, device=args.device)

    map_tiles = partial(map_to_tiles, splats, frame, config)
    benchmarked('map_to_tiles', map_tiles, iters=args.iters, warmup=1, device=args.device)


def main():
  args = parse_args()
  bench_projection(args)

if __name__ == '__main__':
  main()
