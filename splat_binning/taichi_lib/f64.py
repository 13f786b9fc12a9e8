import taichi as ti
from splat_binning.taichi_lib.generic import make_library

globals().update(vars(make_library(ti.f64)))
