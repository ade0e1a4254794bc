"""Optional external collaborators.

Depth estimation, segmentation and backside inpainting are best-effort
services supplied by the caller as async callables taking the display
``PixelBuffer``. Every call is bounded by a timeout; a failure, timeout or
malformed result is logged and the pipeline continues with its baseline
(luminance depth, no segmentation, original image as back texture).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np

from relief.depth import DepthField, Provenance
from relief.errors import DecodeError, DepthSamplingError
from relief.sampler import PixelBuffer, decode

logger = logging.getLogger(__name__)

DepthService = Callable[[PixelBuffer], Awaitable[Optional[np.ndarray]]]
SegmentationService = Callable[[PixelBuffer], Awaitable[Optional[np.ndarray]]]
InpaintService = Callable[[PixelBuffer], Awaitable[Optional[Union[PixelBuffer, bytes]]]]


async def call_optional(
    name: str,
    service: Optional[Callable[[PixelBuffer], Awaitable[Any]]],
    pixels: PixelBuffer,
    timeout_s: float = 10.0
) -> Any:
    """Await an optional service, treating any failure as "no result".

    Args:
        name: Service name for logs
        service: Async callable or None
        pixels: Image passed to the service
        timeout_s: Upper bound on the wait

    Returns:
        The service result, or None if absent, failed or timed out
    """
    if service is None:
        return None

    start_time = time.perf_counter()
    try:
        result = await asyncio.wait_for(service(pixels), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning(f"{name} service timed out after {timeout_s:.1f}s (skipping)")
        return None
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"{name} service failed (skipping): {e}")
        return None

    elapsed_time = time.perf_counter() - start_time
    logger.info(f"{name} service finished (elapsed time: {elapsed_time:.2f}s)")
    return result


async def estimate_depth(
    service: Optional[DepthService],
    pixels: PixelBuffer,
    timeout_s: float = 10.0
) -> Optional[DepthField]:
    """Ask the depth service for a same-resolution depth field.

    The service must return an HxW (or HxWx1) array in the luminance
    convention: 0 is nearest, 1 is farthest (integer arrays are read as
    0-255). Any other shape is rejected.

    Returns:
        Computed DepthField, or None
    """
    result = await call_optional("Depth estimation", service, pixels, timeout_s)
    if result is None:
        return None

    values = np.asarray(result)
    if values.ndim == 3 and values.shape[2] == 1:
        values = values[:, :, 0]
    if values.shape != (pixels.height, pixels.width):
        logger.warning(
            f"Depth estimation returned shape {values.shape}, expected "
            f"{(pixels.height, pixels.width)} (skipping)"
        )
        return None
    if np.issubdtype(values.dtype, np.floating) and not np.all(np.isfinite(values)):
        logger.warning("Depth estimation returned non-finite values (skipping)")
        return None

    try:
        return DepthField.from_array(values, Provenance.COMPUTED)
    except DepthSamplingError as e:
        logger.warning(f"Depth estimation result unusable (skipping): {e}")
        return None


async def segment(
    service: Optional[SegmentationService],
    pixels: PixelBuffer,
    timeout_s: float = 10.0
) -> Optional[np.ndarray]:
    """Ask the segmentation service for an HxW class-index map.

    Returns:
        Integer array of class indices, or None
    """
    result = await call_optional("Segmentation", service, pixels, timeout_s)
    if result is None:
        return None

    classes = np.asarray(result)
    if classes.shape != (pixels.height, pixels.width):
        logger.warning(
            f"Segmentation returned shape {classes.shape}, expected "
            f"{(pixels.height, pixels.width)} (skipping)"
        )
        return None
    return classes.astype(np.int32)


async def inpaint_backside(
    service: Optional[InpaintService],
    pixels: PixelBuffer,
    timeout_s: float = 10.0
) -> PixelBuffer:
    """Ask the inpainting service for a back-face texture.

    The service may return a PixelBuffer or encoded image bytes.

    Returns:
        The replacement image, or ``pixels`` when the service is absent or
        fails
    """
    result = await call_optional("Backside inpainting", service, pixels, timeout_s)
    if result is None:
        return pixels

    if isinstance(result, PixelBuffer):
        return result

    if isinstance(result, (bytes, bytearray)):
        try:
            return decode(bytes(result), max_dimension=max(pixels.width, pixels.height))
        except DecodeError as e:
            logger.warning(f"Backside inpainting returned an unreadable image (using original): {e}")
            return pixels

    logger.warning(f"Backside inpainting returned {type(result).__name__} (using original)")
    return pixels
