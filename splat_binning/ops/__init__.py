from . import linalg, geometry, radius, visibility

__all__ = [
  'linalg',
  'geometry',
  'radius',
  'visibility',
]
