"""Image relief: turn a single 2D image into a displaced, textured 3D mesh.

A Python project that derives a depth field from an image (luminance,
user painting or an external estimator), displaces a parametric grid with
it, renders the result interactively and exports it as GLB and PNG.
"""

from __future__ import annotations

__version__ = "0.1.0"
