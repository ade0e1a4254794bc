"""Viewer session.

A ``ViewerSession`` is the single owned object holding the state of one
image preview: the decoded image, the depth field of record, the depth
editor, the built mesh and the live renderer. Callers drive it through
upload, edit, convert, export and reset; ``dispose`` releases everything.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from relief import evaluate, export, services
from relief.config import DEFAULT_CONFIG, merge_config
from relief.depth import DepthField, compute_luminance, select_depth
from relief.editor import DepthEditor, PaintTool
from relief.errors import DecodeError, RenderInitError, SessionStateError
from relief.mesh import Mesh, build_mesh
from relief.renderer import SceneRenderer, SurfaceFactory
from relief.sampler import PixelBuffer, decode, downscale

logger = logging.getLogger(__name__)


class ConversionResult:
    """Outcome of a successful conversion.

    Attributes:
        mesh: The built mesh, attached to the session's renderer
        used_authored_depth: Whether user-painted depth drove displacement
        segmentation: Class-index map from the segmentation service, if any
        metrics: Conversion metrics dictionary
    """

    def __init__(
        self,
        mesh: Mesh,
        used_authored_depth: bool,
        segmentation: Optional[np.ndarray] = None,
        metrics: Optional[Dict] = None
    ):
        self.mesh = mesh
        self.used_authored_depth = used_authored_depth
        self.segmentation = segmentation
        self.metrics = metrics if metrics is not None else {}


class ViewerSession:
    """State of one image-to-mesh preview.

    Args:
        config: Configuration overriding ``DEFAULT_CONFIG``
        surface_factory: Render surface factory handed to each renderer
        depth_service: Optional async depth estimator
        segmentation_service: Optional async segmenter
        inpaint_service: Optional async backside inpainter
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        surface_factory: Optional[SurfaceFactory] = None,
        depth_service: Optional[services.DepthService] = None,
        segmentation_service: Optional[services.SegmentationService] = None,
        inpaint_service: Optional[services.InpaintService] = None
    ):
        self.config = merge_config(DEFAULT_CONFIG, config)
        self.surface_factory = surface_factory
        self.depth_service = depth_service
        self.segmentation_service = segmentation_service
        self.inpaint_service = inpaint_service

        self.editor = DepthEditor()
        self.native_pixels: Optional[PixelBuffer] = None
        self.pixels: Optional[PixelBuffer] = None
        self.computed_depth: Optional[DepthField] = None
        self.depth: Optional[DepthField] = None
        self.mesh: Optional[Mesh] = None
        self.renderer: Optional[SceneRenderer] = None
        self.segmentation: Optional[np.ndarray] = None

        self._generation = 0
        self._converting = False

    @property
    def has_image(self) -> bool:
        return self.pixels is not None

    @property
    def is_editing(self) -> bool:
        return self.editor.is_editing

    @property
    def used_authored_depth(self) -> bool:
        return self.depth is not None and self.depth.is_authored

    # Image

    def upload(self, source_bytes: bytes) -> PixelBuffer:
        """Decode a new image, replacing any previous session state.

        Args:
            source_bytes: Encoded image file contents

        Returns:
            The downscaled display image

        Raises:
            DecodeError: If the bytes are not an image; the session is left
                fully reset
        """
        self.reset()

        try:
            native = decode(source_bytes, max_dimension=None)
        except DecodeError as e:
            logger.error(f"Upload rejected: {e}")
            self.reset()
            raise

        self.native_pixels = native
        self.pixels = downscale(native, self.config["sampler"].get("max_dimension", 512))
        self.computed_depth = compute_luminance(self.pixels)
        self.depth = self.computed_depth

        logger.info(
            f"Uploaded image {native.width}x{native.height}, "
            f"display {self.pixels.width}x{self.pixels.height}"
        )
        return self.pixels

    # Depth editing

    def _require_image(self) -> None:
        if not self.has_image:
            raise SessionStateError("No image uploaded")

    def begin_edit(self, keep_authored: bool = False) -> np.ndarray:
        """Start painting depth at the native image resolution.

        Args:
            keep_authored: Continue from the last authored field instead of
                reseeding from luminance

        Returns:
            The paint surface
        """
        self._require_image()
        if self._converting:
            raise SessionStateError("Cannot edit while a conversion is running")
        return self.editor.begin(self.native_pixels, keep_authored=keep_authored)

    def tool(self, name: str) -> PaintTool:
        """Configured ``brush`` or ``eraser`` tool."""
        return PaintTool.from_config(name, self.config["editor"])

    def paint(self, x: float, y: float, tool: PaintTool) -> None:
        self.editor.paint(x, y, tool)

    def pointer_down(self, x: float, y: float, tool: PaintTool) -> None:
        self.editor.pointer_down(x, y, tool)

    def pointer_move(self, x: float, y: float) -> None:
        self.editor.pointer_move(x, y)

    def pointer_up(self) -> None:
        self.editor.pointer_up()

    def pointer_leave(self) -> None:
        self.editor.pointer_leave()

    def end_edit(self) -> DepthField:
        """Finish painting; the authored field becomes the depth of record."""
        authored = self.editor.end()
        self.depth = authored
        return authored

    def import_depth(self, raw: np.ndarray) -> DepthField:
        """Use a previously painted grayscale depth image as authored depth.

        Args:
            raw: HxW uint8 image (0 raised, 255 recessed), resized to the
                native image resolution if needed

        Returns:
            The authored depth field
        """
        self.begin_edit()
        try:
            self.editor.load_surface(raw)
        except Exception:
            self.editor.cancel()
            raise
        return self.end_edit()

    # Conversion

    def _check_generation(self, generation: int) -> None:
        if generation != self._generation:
            raise SessionStateError("Session was reset during conversion")

    def _teardown_renderer(self) -> None:
        if self.renderer is not None:
            self.renderer.dispose()
            self.renderer = None

    async def convert(
        self,
        viewport: Optional[Tuple[int, int]] = None,
        animate: bool = True,
        preview: bool = True
    ) -> ConversionResult:
        """Build the mesh and start a live preview of it.

        Any previous renderer is fully torn down before the new mesh is
        built. Optional services are awaited with a timeout and skipped on
        failure.

        Args:
            viewport: Preview size (width, height); defaults to the
                configured viewport
            animate: Run the continuous frame loop
            preview: Start a renderer at all. Without one the mesh can be
                exported as a model but not as a snapshot.

        Returns:
            ConversionResult

        Raises:
            SessionStateError: If no image is loaded, editing is active, a
                conversion is already running or the session is reset
                meanwhile
            RenderInitError: If the drawing surface is unavailable
        """
        self._require_image()
        if self.is_editing:
            raise SessionStateError("Finish depth editing before converting")
        if self._converting:
            raise SessionStateError("A conversion is already running")

        self._converting = True
        generation = self._generation
        try:
            return await self._convert(generation, viewport, animate, preview)
        finally:
            self._converting = False

    async def _convert(
        self,
        generation: int,
        viewport: Optional[Tuple[int, int]],
        animate: bool,
        preview: bool
    ) -> ConversionResult:
        pipeline_timer = evaluate.Timer("Conversion")
        pipeline_timer.start()
        metrics = evaluate.ConversionMetrics()

        self._teardown_renderer()
        self.mesh = None

        timeout_s = self.config["services"].get("timeout_s", 10.0)
        authored = self.editor.authored

        with evaluate.Timer("External services") as timer:
            estimated = None
            if authored is None:
                estimated = await services.estimate_depth(self.depth_service, self.pixels, timeout_s)
                self._check_generation(generation)
            segmentation = await services.segment(self.segmentation_service, self.pixels, timeout_s)
            self._check_generation(generation)
            back = await services.inpaint_backside(self.inpaint_service, self.pixels, timeout_s)
            self._check_generation(generation)
        metrics.update_stage_timing("services", timer.elapsed)

        depth, used_authored = select_depth(self.computed_depth, authored, estimated)
        metrics.compute_depth_metrics(depth)
        metrics.update("used_authored_depth", used_authored)
        metrics.update("used_estimated_depth", estimated is not None and not used_authored)

        with evaluate.Timer("Mesh") as timer:
            mesh = build_mesh(
                self.pixels,
                depth,
                self.config["mesh"],
                back_texture=None if back is self.pixels else back,
            )
        metrics.update_stage_timing("build_mesh", timer.elapsed)
        metrics.compute_mesh_metrics(mesh)

        renderer = None
        if preview:
            renderer = SceneRenderer(self.config["renderer"], self.surface_factory)
            with evaluate.Timer("Renderer") as timer:
                try:
                    renderer.start(mesh, viewport, animate=animate)
                except RenderInitError as e:
                    logger.error(f"Preview failed: {e}")
                    renderer.dispose()
                    raise
            metrics.update_stage_timing("start_renderer", timer.elapsed)

        self.depth = depth
        self.segmentation = segmentation
        self.mesh = mesh
        self.renderer = renderer

        metrics.update("runtime_s", pipeline_timer.elapsed)
        logger.info("\n" + metrics.summary())

        return ConversionResult(mesh, used_authored, segmentation, metrics.to_dict())

    # Viewing

    def resize(self, width: int, height: int) -> None:
        if self.renderer is not None:
            self.renderer.resize(width, height)

    # Export

    def export_model(self) -> bytes:
        """GLB bytes of the current mesh (suggested name ``model.glb``)."""
        return export.to_interchange_format(self.mesh)

    def export_snapshot(self) -> bytes:
        """PNG bytes of the current frame (suggested name ``3dview.png``)."""
        return export.to_raster_snapshot(self.renderer)

    # Teardown

    def reset(self) -> None:
        """Tear down the preview and forget the image."""
        self._generation += 1
        self._teardown_renderer()
        self.editor.clear()
        self.native_pixels = None
        self.pixels = None
        self.computed_depth = None
        self.depth = None
        self.mesh = None
        self.segmentation = None

    def dispose(self) -> None:
        self.reset()
        logger.debug("Session disposed")

    def __enter__(self) -> "ViewerSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()
