"""Image sampling module.

This module decodes arbitrary raster bytes into a fixed-layout RGBA pixel
buffer and applies the deterministic downscale that bounds mesh building
and rendering cost.
"""

from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from relief.errors import DecodeError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 512


class PixelBuffer:
    """Row-major RGBA image with 8 bits per channel.

    The pixels are held as a ``(height, width, 4)`` uint8 array, so the flat
    byte sequence has exactly ``width * height * 4`` entries.
    """

    def __init__(self, data: np.ndarray):
        """Wrap an RGBA array.

        Args:
            data: HxWx4 uint8 array in R, G, B, A channel order
        """
        data = np.asarray(data)
        if data.ndim != 3 or data.shape[2] != 4:
            raise ValueError(f"Expected HxWx4 RGBA array, got shape {data.shape}")
        if data.shape[0] == 0 or data.shape[1] == 0:
            raise ValueError("Pixel buffer must have positive width and height")
        if data.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {data.dtype}")

        self.data = np.ascontiguousarray(data)

    @classmethod
    def from_bytes(cls, width: int, height: int, raw: bytes) -> "PixelBuffer":
        """Build a buffer from a flat RGBA byte sequence.

        Args:
            width: Image width in pixels
            height: Image height in pixels
            raw: Row-major RGBA bytes

        Returns:
            New PixelBuffer
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid dimensions {width}x{height}")
        expected = width * height * 4
        if len(raw) != expected:
            raise ValueError(f"Expected {expected} bytes for {width}x{height} RGBA, got {len(raw)}")

        data = np.frombuffer(raw, dtype=np.uint8).reshape(height, width, 4).copy()
        return cls(data)

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) tuple."""
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        """HxWx3 view without the alpha channel."""
        return self.data[:, :, :3]

    def tobytes(self) -> bytes:
        return self.data.tobytes()

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height})"


def scaled_size(width: int, height: int, max_dimension: Optional[int]) -> Tuple[int, int]:
    """Compute the downscaled size for an image.

    If either dimension exceeds ``max_dimension`` the image is scaled
    uniformly by ``min(max/width, max/height)`` and each side is floored,
    never below 1. Smaller images keep their size.

    Args:
        width: Source width
        height: Source height
        max_dimension: Largest allowed side, or None to disable downscaling

    Returns:
        Tuple of (width, height)
    """
    if max_dimension is None or (width <= max_dimension and height <= max_dimension):
        return width, height

    scale = min(max_dimension / width, max_dimension / height)
    new_width = max(1, int(math.floor(width * scale)))
    new_height = max(1, int(math.floor(height * scale)))
    return new_width, new_height


def to_rgba(image: np.ndarray) -> np.ndarray:
    """Convert an image decoded by OpenCV to 8-bit RGBA.

    Args:
        image: Grayscale, BGR or BGRA array of any OpenCV depth

    Returns:
        HxWx4 uint8 array in RGBA order
    """
    if image.dtype == np.uint16:
        image = (image // 257).astype(np.uint8)
    elif image.dtype != np.uint8:
        # Float images are assumed to be in [0, 1]
        image = np.clip(image * 255.0, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)

    channels = image.shape[2]
    if channels == 1:
        return cv2.cvtColor(np.ascontiguousarray(image[:, :, 0]), cv2.COLOR_GRAY2RGBA)
    if channels == 2:
        # Gray + alpha
        rgba = cv2.cvtColor(np.ascontiguousarray(image[:, :, 0]), cv2.COLOR_GRAY2RGBA)
        rgba[:, :, 3] = image[:, :, 1]
        return rgba
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)

    raise DecodeError(f"Unsupported channel count: {channels}")


def downscale(pixels: PixelBuffer, max_dimension: Optional[int] = DEFAULT_MAX_DIMENSION) -> PixelBuffer:
    """Return ``pixels`` downscaled to fit ``max_dimension``.

    The input is returned unchanged when it already fits.
    """
    new_width, new_height = scaled_size(pixels.width, pixels.height, max_dimension)
    if (new_width, new_height) == pixels.size:
        return pixels

    resized = cv2.resize(pixels.data, (new_width, new_height), interpolation=cv2.INTER_AREA)
    logger.debug(f"Downscaled {pixels.width}x{pixels.height} -> {new_width}x{new_height}")
    return PixelBuffer(resized)


def decode(
    source_bytes: bytes,
    max_dimension: Optional[int] = DEFAULT_MAX_DIMENSION
) -> PixelBuffer:
    """Decode raster bytes into an RGBA pixel buffer.

    Args:
        source_bytes: Encoded image (PNG, JPEG, BMP, WebP, ...)
        max_dimension: Largest allowed side after downscaling, or None to
            keep the native resolution

    Returns:
        New PixelBuffer

    Raises:
        DecodeError: If the bytes are empty or not a supported image
    """
    start_time = time.perf_counter()

    if not source_bytes:
        raise DecodeError("No image data provided")

    buffer = np.frombuffer(source_bytes, dtype=np.uint8)
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        raise DecodeError(f"Could not decode image: {e}") from e

    if image is None or image.size == 0:
        raise DecodeError("Input is not a supported raster image")

    pixels = downscale(PixelBuffer(to_rgba(image)), max_dimension)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Decoded image: {pixels.width}x{pixels.height} "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )

    return pixels


def load_image(
    path: Union[str, Path],
    max_dimension: Optional[int] = DEFAULT_MAX_DIMENSION
) -> PixelBuffer:
    """Read an image file and decode it.

    Args:
        path: Path to the image file
        max_dimension: See ``decode``

    Returns:
        New PixelBuffer
    """
    with open(path, "rb") as f:
        source_bytes = f.read()
    return decode(source_bytes, max_dimension)

