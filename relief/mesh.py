"""Displaced mesh construction module.

This module builds a parametric plane grid whose resolution follows the
image aspect ratio, displaces every vertex by sampling a depth field at the
vertex's UV position, and recomputes vertex normals from the final
positions.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Dict, Optional, Tuple

import numpy as np

from relief.depth import DepthField
from relief.errors import DepthSamplingError
from relief.sampler import PixelBuffer

logger = logging.getLogger(__name__)


class Grid:
    """Vertex and index arrays of a triangulated plane.

    Attributes:
        positions: Nx3 float64 vertex positions
        uvs: Nx2 float64 texture coordinates in [0, 1]
        normals: Nx3 float64 unit vertex normals
        indices: Mx3 int32 triangle vertex indices
        width_segments: Number of cells along x
        height_segments: Number of cells along y
    """

    def __init__(
        self,
        positions: np.ndarray,
        uvs: np.ndarray,
        normals: np.ndarray,
        indices: np.ndarray,
        width_segments: int,
        height_segments: int
    ):
        expected = (width_segments + 1) * (height_segments + 1)
        if len(positions) != expected:
            raise ValueError(f"Grid of {width_segments}x{height_segments} needs {expected} vertices, got {len(positions)}")

        self.positions = positions
        self.uvs = uvs
        self.normals = normals
        self.indices = indices
        self.width_segments = width_segments
        self.height_segments = height_segments

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.indices)

    def copy(self) -> "Grid":
        return Grid(
            self.positions.copy(),
            self.uvs.copy(),
            self.normals.copy(),
            self.indices.copy(),
            self.width_segments,
            self.height_segments,
        )


class Mesh:
    """A displaced grid together with its textures.

    The mesh exclusively owns its grid. Textures are shared read-only with
    the sampler output. ``pitch`` and ``yaw`` hold the interactive rotation
    in radians applied by the renderer and written by the exporter.
    """

    def __init__(
        self,
        grid: Grid,
        texture: PixelBuffer,
        plane_size: Tuple[float, float],
        back_texture: Optional[PixelBuffer] = None,
        height_scale: float = 0.5
    ):
        self.grid = grid
        self.texture = texture
        self.back_texture = back_texture
        self.plane_width, self.plane_height = plane_size
        self.height_scale = height_scale
        self.pitch = 0.0
        self.yaw = 0.0

    @property
    def width_segments(self) -> int:
        return self.grid.width_segments

    @property
    def height_segments(self) -> int:
        return self.grid.height_segments

    def rotation_matrix(self) -> np.ndarray:
        """3x3 rotation for the current pitch (about x) and yaw (about y).

        Applied as ``R = Rx(pitch) @ Ry(yaw)``, matching an XYZ Euler order.
        """
        cx, sx = math.cos(self.pitch), math.sin(self.pitch)
        cy, sy = math.cos(self.yaw), math.sin(self.yaw)

        Rx = np.array([
            [1, 0, 0],
            [0, cx, -sx],
            [0, sx, cx]
        ])
        Ry = np.array([
            [cy, 0, sy],
            [0, 1, 0],
            [-sy, 0, cy]
        ])
        return Rx @ Ry

    def transform(self) -> np.ndarray:
        """4x4 homogeneous transform of the mesh node."""
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix()
        return T

    def reset_rotation(self) -> None:
        self.pitch = 0.0
        self.yaw = 0.0

    def __repr__(self) -> str:
        return (
            f"Mesh({self.grid.vertex_count} vertices, {self.grid.triangle_count} triangles, "
            f"plane {self.plane_width:.3f}x{self.plane_height:.3f})"
        )


def plane_size(image_width: int, image_height: int) -> Tuple[float, float]:
    """Plane dimensions with the shorter side normalized to unit length.

    Args:
        image_width: Image width in pixels
        image_height: Image height in pixels

    Returns:
        Tuple of (plane_width, plane_height)
    """
    if image_width <= 0 or image_height <= 0:
        raise ValueError(f"Invalid image size {image_width}x{image_height}")

    aspect = image_width / image_height
    if aspect >= 1:
        return aspect, 1.0
    return 1.0, 1.0 / aspect


def segment_counts(
    plane_width: float,
    plane_height: float,
    base_segments: int = 100,
    min_segments: int = 10
) -> Tuple[int, int]:
    """Grid segment counts for a plane.

    ``base_segments`` is multiplied by the plane's own dimension along an
    axis when that dimension exceeds 1, floored, then clamped to at least
    ``min_segments``.

    Args:
        plane_width: Plane size along x
        plane_height: Plane size along y
        base_segments: Segments along a unit-length side
        min_segments: Lower bound per axis

    Returns:
        Tuple of (width_segments, height_segments)
    """
    width_segments = base_segments * plane_width if plane_width > 1 else base_segments
    height_segments = base_segments * plane_height if plane_height > 1 else base_segments

    width_segments = max(min_segments, int(math.floor(width_segments)))
    height_segments = max(min_segments, int(math.floor(height_segments)))
    return width_segments, height_segments


def build_grid(
    plane_width: float,
    plane_height: float,
    width_segments: int,
    height_segments: int
) -> Grid:
    """Build a flat plane grid centred at the origin in the z = 0 plane.

    Vertices are laid out row by row starting at ``y = +plane_height / 2``.
    ``u`` grows with x and ``v`` grows with y, so the top row has ``v = 1``.
    Each cell is split into two counter-clockwise triangles facing +z.

    Args:
        plane_width: Plane size along x
        plane_height: Plane size along y
        width_segments: Cells along x
        height_segments: Cells along y

    Returns:
        Flat Grid with normals (0, 0, 1)
    """
    grid_x1 = width_segments + 1
    grid_y1 = height_segments + 1

    ix = np.arange(grid_x1)
    iy = np.arange(grid_y1)
    IX, IY = np.meshgrid(ix, iy)
    IX = IX.ravel()
    IY = IY.ravel()

    segment_width = plane_width / width_segments
    segment_height = plane_height / height_segments

    x = IX * segment_width - plane_width / 2
    y = -(IY * segment_height - plane_height / 2)
    positions = np.column_stack([x, y, np.zeros_like(x)]).astype(np.float64)

    u = IX / width_segments
    v = 1.0 - IY / height_segments
    uvs = np.column_stack([u, v]).astype(np.float64)

    normals = np.tile(np.array([0.0, 0.0, 1.0]), (len(positions), 1))

    # Cell corners: a (top-left), b (bottom-left), c (bottom-right), d (top-right)
    cx, cy = np.meshgrid(np.arange(width_segments), np.arange(height_segments))
    cx = cx.ravel()
    cy = cy.ravel()
    a = cx + grid_x1 * cy
    b = cx + grid_x1 * (cy + 1)
    c = (cx + 1) + grid_x1 * (cy + 1)
    d = (cx + 1) + grid_x1 * cy

    first = np.column_stack([a, b, d])
    second = np.column_stack([b, c, d])
    indices = np.empty((2 * len(a), 3), dtype=np.int32)
    indices[0::2] = first
    indices[1::2] = second

    return Grid(positions, uvs, normals, indices, width_segments, height_segments)


def uv_to_pixel(uvs: np.ndarray, image_width: int, image_height: int) -> Tuple[np.ndarray, np.ndarray]:
    """Pixel coordinates sampled for each UV.

    ``px = floor(u * (W - 1))`` and ``py = floor((1 - v) * (H - 1))``. V is
    inverted because texture V grows opposite to image row order.

    Args:
        uvs: Nx2 texture coordinates
        image_width: Image width
        image_height: Image height

    Returns:
        Tuple of (px, py) integer arrays
    """
    px = np.floor(uvs[:, 0] * (image_width - 1)).astype(np.int64)
    py = np.floor((1.0 - uvs[:, 1]) * (image_height - 1)).astype(np.int64)
    px = np.clip(px, 0, image_width - 1)
    py = np.clip(py, 0, image_height - 1)
    return px, py


def displace(
    grid: Grid,
    depth: DepthField,
    image_width: int,
    image_height: int,
    height_scale: float = 0.5
) -> None:
    """Set vertex heights from a depth field, in place.

    Every vertex gets ``z = (1 - depth) * height_scale``: darker (lower)
    samples protrude and lighter samples recede. When the depth field's
    resolution differs from the image the sampling coordinates are rescaled
    proportionally.

    Args:
        grid: Grid to displace
        depth: Depth field of record
        image_width: Width of the image the UVs refer to
        image_height: Height of the image the UVs refer to
        height_scale: Height of a depth-0 sample
    """
    if depth.samples.ndim != 2 or depth.samples.size == 0:
        raise DepthSamplingError("Depth field has no samples")

    px, py = uv_to_pixel(grid.uvs, image_width, image_height)
    samples = depth.sample(px, py, image_width, image_height)
    grid.positions[:, 2] = (1.0 - samples) * height_scale


def compute_vertex_normals(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Average adjacent face normals at every vertex.

    Face normals are the unnormalized cross products of the triangle
    edges, so larger faces weigh more. Vertices without a usable normal
    fall back to +z.

    Args:
        positions: Nx3 vertex positions
        indices: Mx3 triangle indices

    Returns:
        Nx3 array of unit normals
    """
    v0 = positions[indices[:, 0]]
    v1 = positions[indices[:, 1]]
    v2 = positions[indices[:, 2]]
    face_normals = np.cross(v1 - v0, v2 - v0)

    normals = np.zeros_like(positions)
    for k in range(3):
        np.add.at(normals, indices[:, k], face_normals)

    lengths = np.linalg.norm(normals, axis=1)
    valid = lengths > 1e-12
    normals[valid] /= lengths[valid].reshape(-1, 1)
    normals[~valid] = [0.0, 0.0, 1.0]
    return normals


def build_mesh(
    pixels: PixelBuffer,
    depth: DepthField,
    config: Optional[Dict] = None,
    back_texture: Optional[PixelBuffer] = None
) -> Mesh:
    """Build a displaced, textured mesh from an image and its depth.

    Args:
        pixels: Colour texture and sizing reference
        depth: Depth field of record (any resolution)
        config: Optional mesh configuration (``base_segments``,
            ``min_segments``, ``height_scale``)
        back_texture: Optional texture for the reverse face

    Returns:
        New Mesh
    """
    if config is None:
        config = {}

    base_segments = config.get("base_segments", 100)
    min_segments = config.get("min_segments", 10)
    height_scale = config.get("height_scale", 0.5)

    start_time = time.perf_counter()

    size = plane_size(pixels.width, pixels.height)
    width_segments, height_segments = segment_counts(*size, base_segments, min_segments)
    logger.info(
        f"Building {width_segments}x{height_segments} grid on "
        f"{size[0]:.3f}x{size[1]:.3f} plane"
    )

    if (depth.width, depth.height) != pixels.size:
        logger.info(
            f"Rescaling depth samples {depth.width}x{depth.height} -> "
            f"{pixels.width}x{pixels.height}"
        )

    grid = build_grid(size[0], size[1], width_segments, height_segments)
    displace(grid, depth, pixels.width, pixels.height, height_scale)
    grid.normals = compute_vertex_normals(grid.positions, grid.indices)

    mesh = Mesh(grid, pixels, size, back_texture=back_texture, height_scale=height_scale)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Mesh built: {grid.vertex_count} vertices, {grid.triangle_count} triangles "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )

    return mesh
