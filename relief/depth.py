"""Depth extraction module.

This module derives a single-channel depth field from RGBA pixels using a
luminance formula, and decides which depth field drives a conversion when
an authored (user-painted) or externally estimated field is available.

Luminance is a heuristic stand-in for real depth sensing: it approximates
perceived brightness, and the mesh builder maps dark pixels to raised
geometry and bright pixels to recessed geometry.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Optional, Tuple

import numpy as np

from relief.errors import DepthSamplingError
from relief.sampler import PixelBuffer

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


class Provenance(enum.Enum):
    """Where a depth field came from."""

    COMPUTED = "computed"
    AUTHORED = "authored"


class DepthField:
    """Per-pixel depth samples in [0, 1].

    Samples are stored as a ``(height, width)`` float64 array. A value of 0
    is the nearest (most raised) depth and 1 the farthest.
    """

    def __init__(self, samples: np.ndarray, provenance: Provenance = Provenance.COMPUTED):
        """Wrap an array of depth samples.

        Args:
            samples: HxW array of values in [0, 1]
            provenance: Whether the field was computed or painted by a user
        """
        samples = np.asarray(samples, dtype=np.float64)
        if samples.ndim != 2 or samples.size == 0:
            raise DepthSamplingError(f"Depth field must be a non-empty 2D array, got shape {samples.shape}")

        self.samples = np.clip(samples, 0.0, 1.0)
        self.provenance = provenance

    @classmethod
    def from_raw(cls, raw: np.ndarray, provenance: Provenance = Provenance.COMPUTED) -> "DepthField":
        """Build a field from raw 0-255 samples.

        Args:
            raw: HxW array of values in [0, 255]
            provenance: Field provenance

        Returns:
            New DepthField
        """
        return cls(np.asarray(raw, dtype=np.float64) / 255.0, provenance)

    @classmethod
    def from_array(cls, values: np.ndarray, provenance: Provenance = Provenance.COMPUTED) -> "DepthField":
        """Build a field from an array of unknown scale.

        Integer arrays are treated as raw 0-255 samples, floating point
        arrays as already normalized to [0, 1]. A trailing singleton
        channel axis is dropped.

        Args:
            values: HxW or HxWx1 array
            provenance: Field provenance

        Returns:
            New DepthField
        """
        values = np.asarray(values)
        if values.ndim == 3 and values.shape[2] == 1:
            values = values[:, :, 0]
        if np.issubdtype(values.dtype, np.integer):
            return cls.from_raw(values, provenance)
        return cls(values, provenance)

    @property
    def width(self) -> int:
        return self.samples.shape[1]

    @property
    def height(self) -> int:
        return self.samples.shape[0]

    @property
    def is_authored(self) -> bool:
        return self.provenance is Provenance.AUTHORED

    def to_raw(self) -> np.ndarray:
        """Return the samples as a uint8 image (0-255)."""
        return np.round(self.samples * 255.0).astype(np.uint8)

    def sample_indices(
        self,
        px: np.ndarray,
        py: np.ndarray,
        source_width: int,
        source_height: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Map pixel coordinates of a source image onto this field.

        When the field has the same resolution as the source the
        coordinates are returned unchanged. Otherwise each source pixel is
        mapped by its centre to the field pixel covering the same relative
        position, then clipped to the field bounds.

        Args:
            px: Integer column indices in the source image
            py: Integer row indices in the source image
            source_width: Source image width
            source_height: Source image height

        Returns:
            Tuple of (columns, rows) in field coordinates
        """
        px = np.asarray(px, dtype=np.int64)
        py = np.asarray(py, dtype=np.int64)

        if (self.width, self.height) == (source_width, source_height):
            return px, py

        fx = np.floor((px + 0.5) * self.width / source_width).astype(np.int64)
        fy = np.floor((py + 0.5) * self.height / source_height).astype(np.int64)
        fx = np.clip(fx, 0, self.width - 1)
        fy = np.clip(fy, 0, self.height - 1)
        return fx, fy

    def sample(
        self,
        px: np.ndarray,
        py: np.ndarray,
        source_width: int,
        source_height: int
    ) -> np.ndarray:
        """Nearest-pixel depth lookup for source image coordinates.

        Args:
            px: Integer column indices in the source image
            py: Integer row indices in the source image
            source_width: Source image width
            source_height: Source image height

        Returns:
            Array of depth samples with the shape of ``px``
        """
        fx, fy = self.sample_indices(px, py, source_width, source_height)
        return self.samples[fy, fx]

    def resized(self, width: int, height: int) -> "DepthField":
        """Return a nearest-neighbour resampled copy at another resolution."""
        if (width, height) == (self.width, self.height):
            return DepthField(self.samples.copy(), self.provenance)

        cols = np.arange(width)
        rows = np.arange(height)
        fx = np.clip(np.floor((cols + 0.5) * self.width / width).astype(np.int64), 0, self.width - 1)
        fy = np.clip(np.floor((rows + 0.5) * self.height / height).astype(np.int64), 0, self.height - 1)
        return DepthField(self.samples[np.ix_(fy, fx)], self.provenance)

    def __repr__(self) -> str:
        return f"DepthField({self.width}x{self.height}, {self.provenance.value})"


def compute_luminance(pixels: PixelBuffer) -> DepthField:
    """Compute a depth field from pixel luminance.

    For every pixel the depth sample is ``(0.299 R + 0.587 G + 0.114 B) / 255``.
    Alpha is ignored.

    Args:
        pixels: Source RGBA image

    Returns:
        Computed DepthField with the same width and height as ``pixels``
    """
    start_time = time.perf_counter()

    rgb = pixels.rgb.astype(np.float64)
    luminance = rgb @ LUMA_WEIGHTS / 255.0
    depth = DepthField(np.clip(luminance, 0.0, 1.0), Provenance.COMPUTED)

    elapsed_time = time.perf_counter() - start_time
    logger.debug(
        f"Computed luminance depth {depth.width}x{depth.height}: "
        f"min={depth.samples.min():.3f}, max={depth.samples.max():.3f} "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )

    return depth


def select_depth(
    computed: DepthField,
    authored: Optional[DepthField] = None,
    estimated: Optional[DepthField] = None
) -> Tuple[DepthField, bool]:
    """Pick the depth field that drives a conversion.

    An authored field fully replaces every other field, without blending.
    Otherwise an externally estimated field replaces the luminance field.

    Args:
        computed: Luminance depth of the image
        authored: User-painted depth, if any
        estimated: Depth returned by an external estimator, if any

    Returns:
        Tuple of (depth_field, used_authored)
    """
    if authored is not None:
        logger.info(f"Using authored depth {authored.width}x{authored.height}")
        return authored, True

    if estimated is not None:
        logger.info("Using externally estimated depth")
        return estimated, False

    return computed, False
