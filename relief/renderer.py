"""Scene rendering module.

This module owns the camera, lights and live mesh of a preview, runs a
cooperative frame loop on the asyncio event loop and translates pointer
drags into mesh rotation. Actual drawing is delegated to a render surface
(an Open3D window by default, see ``relief.visualise``), which keeps the
scene logic independent of the graphics backend.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from relief.errors import RenderInitError, SessionStateError
from relief.mesh import Mesh

logger = logging.getLogger(__name__)


class RendererState(enum.Enum):
    IDLE = "idle"
    LIVE = "live"
    DISPOSED = "disposed"


class Camera:
    """Perspective camera looking at the origin.

    Args:
        fov: Vertical field of view in degrees
        aspect: Viewport width / height
        near: Near clipping distance
        far: Far clipping distance
        distance: Offset of the eye along +z
    """

    def __init__(
        self,
        fov: float = 45.0,
        aspect: float = 1.0,
        near: float = 0.1,
        far: float = 1000.0,
        distance: float = 3.0
    ):
        self.fov = fov
        self.aspect = aspect
        self.near = near
        self.far = far
        self.position = np.array([0.0, 0.0, distance])
        self.target = np.zeros(3)
        self.up = np.array([0.0, 1.0, 0.0])

    def view_matrix(self) -> np.ndarray:
        """4x4 world-to-camera matrix (camera looks down its -z axis)."""
        forward = self.target - self.position
        forward = forward / np.linalg.norm(forward)
        right = np.cross(forward, self.up)
        right = right / np.linalg.norm(right)
        true_up = np.cross(right, forward)

        V = np.eye(4)
        V[0, :3] = right
        V[1, :3] = true_up
        V[2, :3] = -forward
        V[:3, 3] = -V[:3, :3] @ self.position
        return V

    def projection_matrix(self) -> np.ndarray:
        """4x4 perspective projection to clip space."""
        f = 1.0 / math.tan(math.radians(self.fov) / 2)
        n, fa = self.near, self.far
        return np.array([
            [f / self.aspect, 0, 0, 0],
            [0, f, 0, 0],
            [0, 0, (fa + n) / (n - fa), 2 * fa * n / (n - fa)],
            [0, 0, -1, 0]
        ])

    def intrinsic_matrix(self, width: int, height: int) -> np.ndarray:
        """3x3 pinhole intrinsics for a viewport of the given size.

        The focal length follows from the vertical field of view; pixels
        are square.
        """
        fy = height / (2 * math.tan(math.radians(self.fov) / 2))
        return np.array([
            [fy, 0, width / 2 - 0.5],
            [0, fy, height / 2 - 0.5],
            [0, 0, 1]
        ])

    def extrinsic_matrix(self) -> np.ndarray:
        """4x4 world-to-camera matrix in the x-right, y-down, z-forward convention."""
        flip = np.diag([1.0, -1.0, -1.0, 1.0])
        return flip @ self.view_matrix()


class Light:
    """Scene light.

    Args:
        kind: ``"ambient"`` or ``"directional"``
        color: RGB colour in [0, 1]
        intensity: Scalar intensity
        position: Position of a directional light (it points at the origin)
    """

    def __init__(
        self,
        kind: str,
        color: Tuple[float, float, float] = (1.0, 1.0, 1.0),
        intensity: float = 1.0,
        position: Optional[Tuple[float, float, float]] = None
    ):
        if kind not in ("ambient", "directional"):
            raise ValueError(f"Unknown light kind: {kind}")
        self.kind = kind
        self.color = np.asarray(color, dtype=np.float64)
        self.intensity = float(intensity)
        self.position = None if position is None else np.asarray(position, dtype=np.float64)

    @property
    def direction(self) -> Optional[np.ndarray]:
        """Unit vector the light travels along, for directional lights."""
        if self.position is None:
            return None
        return -self.position / np.linalg.norm(self.position)

    def __repr__(self) -> str:
        return f"Light({self.kind}, intensity={self.intensity})"


def default_lights(config: Optional[Dict] = None) -> List[Light]:
    """One ambient and one directional light, as configured."""
    if config is None:
        config = {}

    ambient = config.get("ambient_light", {})
    directional = config.get("directional_light", {})
    return [
        Light(
            "ambient",
            color=ambient.get("color", (1.0, 1.0, 1.0)),
            intensity=ambient.get("intensity", 0.4),
        ),
        Light(
            "directional",
            color=directional.get("color", (1.0, 1.0, 1.0)),
            intensity=directional.get("intensity", 1.0),
            position=directional.get("position", (2.0, 2.0, 2.0)),
        ),
    ]


class RenderSurface:
    """Interface of a drawing surface used by ``SceneRenderer``.

    Subclasses draw the bound mesh with the given camera and lights and
    must make ``release`` idempotent.
    """

    @property
    def closed(self) -> bool:
        """Whether the user closed the surface (e.g. its window)."""
        return False

    def bind(self, mesh: Mesh, camera: Camera, lights: List[Light]) -> None:
        raise NotImplementedError

    def draw(self, mesh: Mesh, camera: Camera, lights: List[Light]) -> None:
        raise NotImplementedError

    def resize(self, width: int, height: int, camera: Camera) -> None:
        raise NotImplementedError

    def capture(self) -> np.ndarray:
        """Return the last drawn frame as an HxWx4 uint8 RGBA array."""
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError


SurfaceFactory = Callable[[int, int, Dict], RenderSurface]


def open3d_surface_factory(width: int, height: int, config: Dict) -> RenderSurface:
    """Create the default Open3D window surface."""
    from relief.visualise import Open3DSurface

    background = config.get("background", (0.0, 0.0, 0.0, 0.0))
    return Open3DSurface(width, height, visible=config.get("visible", True), background=background[:3])


class SceneRenderer:
    """Live preview of a single mesh.

    States: IDLE (no mesh) -> LIVE (animating) -> DISPOSED. A disposed
    renderer cannot be restarted; sessions create a new one per conversion.

    Args:
        config: Renderer configuration section
        surface_factory: Callable ``(width, height, config) -> RenderSurface``
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        surface_factory: Optional[SurfaceFactory] = None
    ):
        self.config = config if config is not None else {}
        self.surface_factory = surface_factory or open3d_surface_factory
        self.state = RendererState.IDLE

        self.surface: Optional[RenderSurface] = None
        self.mesh: Optional[Mesh] = None
        self.camera: Optional[Camera] = None
        self.lights: List[Light] = []
        self.viewport: Tuple[int, int] = tuple(self.config.get("viewport", (800, 600)))

        self.rotation_speed = self.config.get("rotation_speed", 0.005)
        self.fps = self.config.get("fps", 60)

        self.frame_count = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._in_frame = False
        self._dragging = False
        self._last_pointer: Optional[Tuple[float, float]] = None

    @property
    def is_live(self) -> bool:
        return self.state is RendererState.LIVE

    @property
    def is_running(self) -> bool:
        """Whether a frame loop is scheduled."""
        return self._loop_task is not None and not self._loop_task.done() and not self._cancelled

    @property
    def loop_task(self) -> Optional[asyncio.Task]:
        return self._loop_task

    def start(
        self,
        mesh: Mesh,
        viewport: Optional[Tuple[int, int]] = None,
        animate: bool = True
    ) -> None:
        """Create the surface, camera and lights, bind the mesh and start animating.

        Args:
            mesh: Mesh to display
            viewport: Surface size (width, height) in pixels
            animate: Schedule the continuous frame loop on the running
                event loop

        Raises:
            RenderInitError: If the surface cannot be created, in which case
                any partially created state is released
        """
        if self.state is not RendererState.IDLE:
            raise SessionStateError(f"Renderer cannot start from state {self.state.value}")

        if viewport is not None:
            self.viewport = (int(viewport[0]), int(viewport[1]))
        width, height = self.viewport
        if width <= 0 or height <= 0:
            raise RenderInitError(f"Invalid viewport {width}x{height}")

        loop = None
        if animate:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as e:
                raise RenderInitError("Frame loop requires a running event loop") from e

        try:
            self.surface = self.surface_factory(width, height, self.config)
            self.camera = Camera(
                fov=self.config.get("fov", 45.0),
                aspect=width / height,
                near=self.config.get("near", 0.1),
                far=self.config.get("far", 1000.0),
                distance=self.config.get("camera_distance", 3.0),
            )
            self.lights = default_lights(self.config)
            self.surface.bind(mesh, self.camera, self.lights)
        except Exception as e:
            logger.error(f"Failed to initialize render surface: {e}")
            self._release_surface()
            self.camera = None
            self.lights = []
            raise RenderInitError(f"Drawing surface unavailable: {e}") from e

        self.mesh = mesh
        self.state = RendererState.LIVE
        self._cancelled = False
        logger.info(f"Renderer live at {width}x{height}")

        if loop is not None:
            self._loop_task = loop.create_task(self._frame_loop())

    async def _frame_loop(self) -> None:
        interval = 1.0 / self.fps if self.fps > 0 else 0.0
        while not self._cancelled and self.is_live:
            try:
                self.render_frame()
            except Exception as e:
                logger.error(f"Frame loop stopped after render error: {e}")
                self._cancelled = True
                break
            if self.surface is not None and self.surface.closed:
                logger.info("Render surface closed, stopping frame loop")
                self._cancelled = True
                break
            await asyncio.sleep(interval)

    def render_frame(self) -> bool:
        """Draw one frame.

        Returns:
            True if a frame was drawn, False if the renderer is not live or
            a frame is already in progress
        """
        if not self.is_live or self.surface is None or self._in_frame:
            return False

        self._in_frame = True
        try:
            self.surface.draw(self.mesh, self.camera, self.lights)
            self.frame_count += 1
        finally:
            self._in_frame = False
        return True

    def resize(self, width: int, height: int) -> None:
        """Update camera aspect and surface size without touching the frame loop."""
        if width <= 0 or height <= 0:
            logger.warning(f"Ignoring resize to {width}x{height}")
            return

        self.viewport = (int(width), int(height))
        if not self.is_live:
            return

        self.camera.aspect = width / height
        self.surface.resize(int(width), int(height), self.camera)
        logger.debug(f"Resized viewport to {width}x{height}")

    def pointer_down(self, x: float, y: float) -> None:
        self._dragging = True
        self._last_pointer = (x, y)

    def pointer_move(self, x: float, y: float) -> None:
        """Rotate the mesh by the drag delta since the previous pointer event."""
        if not self._dragging or self.mesh is None:
            return

        dx = x - self._last_pointer[0]
        dy = y - self._last_pointer[1]
        self.mesh.yaw += dx * self.rotation_speed
        self.mesh.pitch += dy * self.rotation_speed
        self._last_pointer = (x, y)

    def pointer_up(self) -> None:
        self._dragging = False
        self._last_pointer = None

    def capture(self) -> np.ndarray:
        """Render and read back the current frame.

        Returns:
            HxWx4 uint8 RGBA array
        """
        if not self.is_live:
            raise SessionStateError("Renderer is not live")
        self.render_frame()
        return self.surface.capture()

    def stop(self) -> None:
        """Cancel the frame loop. Drawing resources stay allocated."""
        self._cancelled = True
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()

    def _release_surface(self) -> None:
        if self.surface is not None:
            try:
                self.surface.release()
            finally:
                self.surface = None

    def dispose(self) -> None:
        """Cancel the frame loop, then release the surface. Idempotent."""
        if self.state is RendererState.DISPOSED:
            return

        self.stop()
        self._release_surface()
        self.mesh = None
        self.camera = None
        self.lights = []
        self._dragging = False
        self._last_pointer = None
        self.state = RendererState.DISPOSED
        logger.debug(f"Renderer disposed after {self.frame_count} frames")
