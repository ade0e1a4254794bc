"""Interactive depth painting.

The editor keeps a grayscale paint surface at the native resolution of the
source image. It is seeded with the luminance depth so edits start from a
sensible baseline; painting a disc with value 0 raises the surface and 255
lowers it. When editing ends the painted surface becomes the authored
depth field of record.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from relief.depth import DepthField, Provenance, compute_luminance
from relief.errors import DepthSamplingError, SessionStateError
from relief.sampler import PixelBuffer

logger = logging.getLogger(__name__)


class EditorState(enum.Enum):
    IDLE = "idle"
    EDITING = "editing"


class PaintTool:
    """A brush configuration passed to every paint call.

    Args:
        value: Depth value painted, 0-255 (0 raises, 255 lowers)
        radius: Disc radius in surface pixels
        name: Label used in logs
    """

    def __init__(self, value: int, radius: int = 10, name: str = "custom"):
        if not 0 <= int(value) <= 255:
            raise ValueError(f"Paint value must be in [0, 255], got {value}")
        if int(radius) < 0:
            raise ValueError(f"Paint radius must be non-negative, got {radius}")

        self.value = int(value)
        self.radius = int(radius)
        self.name = name

    @classmethod
    def brush(cls, radius: int = 10, value: int = 0) -> "PaintTool":
        """Black brush: painted areas protrude."""
        return cls(value, radius, "brush")

    @classmethod
    def eraser(cls, radius: int = 10, value: int = 255) -> "PaintTool":
        """White eraser: painted areas recede."""
        return cls(value, radius, "eraser")

    @classmethod
    def from_config(cls, name: str, config: Optional[dict] = None) -> "PaintTool":
        """Build the ``brush`` or ``eraser`` tool from the editor config."""
        if config is None:
            config = {}

        radius = config.get("radius", 10)
        if name == "brush":
            return cls.brush(radius, config.get("brush_value", 0))
        if name == "eraser":
            return cls.eraser(radius, config.get("eraser_value", 255))
        raise ValueError(f"Unknown paint tool: {name}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PaintTool):
            return NotImplemented
        return (self.value, self.radius, self.name) == (other.value, other.radius, other.name)

    def __repr__(self) -> str:
        return f"PaintTool({self.name}, value={self.value}, radius={self.radius})"


class DepthEditor:
    """Paint surface state machine: IDLE -> EDITING -> IDLE."""

    def __init__(self):
        self.state = EditorState.IDLE
        self.surface: Optional[np.ndarray] = None
        self.authored: Optional[DepthField] = None
        self._stroke_tool: Optional[PaintTool] = None
        self._last_point: Optional[Tuple[int, int]] = None
        self.stroke_count = 0

    @property
    def is_editing(self) -> bool:
        return self.state is EditorState.EDITING

    @property
    def in_stroke(self) -> bool:
        return self._stroke_tool is not None

    def begin(
        self,
        native_pixels: PixelBuffer,
        computed: Optional[DepthField] = None,
        keep_authored: bool = False
    ) -> np.ndarray:
        """Enter editing and seed the paint surface.

        The surface is seeded from luminance, so earlier strokes are not on
        it and ending this edit replaces the previous authored field. Pass
        ``keep_authored`` to continue painting on the last authored field
        instead.

        Args:
            native_pixels: Source image at its native resolution
            computed: Luminance depth to seed with. Computed from
                ``native_pixels`` when omitted; resampled when its size
                differs from the native image.
            keep_authored: Seed from the last authored field, if any

        Returns:
            The uint8 paint surface (HxW)
        """
        if self.is_editing:
            raise SessionStateError("Editor is already active")

        if keep_authored and self.authored is not None:
            computed = self.authored
        elif computed is None:
            computed = compute_luminance(native_pixels)
        if (computed.width, computed.height) != native_pixels.size:
            computed = computed.resized(native_pixels.width, native_pixels.height)

        self.surface = computed.to_raw()
        self.state = EditorState.EDITING
        self._stroke_tool = None
        self._last_point = None

        logger.info(f"Editing depth at native resolution {native_pixels.width}x{native_pixels.height}")
        return self.surface

    def _require_editing(self) -> None:
        if not self.is_editing or self.surface is None:
            raise SessionStateError("Depth editor is not active")

    def paint(self, center_x: float, center_y: float, tool: PaintTool) -> None:
        """Fill a disc of ``tool.radius`` at the given centre with ``tool.value``.

        Args:
            center_x: Column on the paint surface
            center_y: Row on the paint surface
            tool: Paint configuration
        """
        self._require_editing()
        center = (int(round(center_x)), int(round(center_y)))
        cv2.circle(self.surface, center, tool.radius, tool.value, thickness=-1)

    def _paint_segment(self, start: Tuple[int, int], end: Tuple[int, int], tool: PaintTool) -> None:
        # Join consecutive pointer samples so fast drags stay continuous
        if tool.radius > 0 and start != end:
            cv2.line(self.surface, start, end, tool.value, thickness=2 * tool.radius)
        cv2.circle(self.surface, end, tool.radius, tool.value, thickness=-1)

    def pointer_down(self, x: float, y: float, tool: PaintTool) -> None:
        """Start a stroke and paint at the pointer position."""
        self._require_editing()
        if self.in_stroke:
            self.pointer_up()

        self._stroke_tool = tool
        self._last_point = (int(round(x)), int(round(y)))
        self.paint(x, y, tool)

    def pointer_move(self, x: float, y: float) -> None:
        """Continue the active stroke. Ignored when no stroke is active."""
        self._require_editing()
        if not self.in_stroke:
            return

        point = (int(round(x)), int(round(y)))
        self._paint_segment(self._last_point, point, self._stroke_tool)
        self._last_point = point

    def pointer_up(self) -> None:
        """End the active stroke, if any."""
        if self.in_stroke:
            self.stroke_count += 1
            logger.debug(f"Stroke {self.stroke_count} finished with {self._stroke_tool}")
        self._stroke_tool = None
        self._last_point = None

    pointer_leave = pointer_up

    def load_surface(self, raw: np.ndarray) -> None:
        """Replace the paint surface with an existing grayscale depth image.

        The image is resized (nearest neighbour) to the native resolution.

        Args:
            raw: HxW (or HxWxC, first channel used) uint8 depth image,
                0 = raised, 255 = recessed

        Raises:
            DepthSamplingError: If the image is empty, not 2-D or not 8-bit
        """
        self._require_editing()
        raw = np.asarray(raw)
        if raw.ndim == 3:
            raw = raw[:, :, 0]
        if raw.ndim != 2 or raw.size == 0:
            raise DepthSamplingError(f"Painted depth must be a non-empty 2D image, got shape {raw.shape}")
        if raw.dtype != np.uint8:
            raise DepthSamplingError(f"Painted depth must be 8-bit, got {raw.dtype}")

        height, width = self.surface.shape
        if raw.shape != (height, width):
            raw = cv2.resize(raw, (width, height), interpolation=cv2.INTER_NEAREST)
        self.surface[:] = raw

    def surface_coords(
        self,
        x: float,
        y: float,
        display_width: int,
        display_height: int
    ) -> Tuple[float, float]:
        """Convert pointer coordinates on a displayed surface to paint coordinates.

        Args:
            x: Pointer column relative to the displayed surface
            y: Pointer row relative to the displayed surface
            display_width: On-screen width of the surface
            display_height: On-screen height of the surface

        Returns:
            Tuple of (column, row) on the native paint surface
        """
        self._require_editing()
        height, width = self.surface.shape
        return x * width / display_width, y * height / display_height

    def end(self) -> DepthField:
        """Leave editing and return the authored depth field."""
        self._require_editing()
        self.pointer_up()

        self.authored = DepthField.from_raw(self.surface, Provenance.AUTHORED)
        self.state = EditorState.IDLE
        self.surface = None

        logger.info(
            f"Authored depth {self.authored.width}x{self.authored.height} "
            f"after {self.stroke_count} strokes"
        )
        return self.authored

    def cancel(self) -> None:
        """Leave editing without authoring; the last authored field is kept."""
        self.pointer_up()
        self.state = EditorState.IDLE
        self.surface = None
        logger.debug("Depth edit cancelled")

    def clear(self) -> None:
        """Drop the paint surface and any authored field."""
        self.state = EditorState.IDLE
        self.surface = None
        self.authored = None
        self._stroke_tool = None
        self._last_point = None
        self.stroke_count = 0
