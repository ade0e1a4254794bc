"""Tests for session module.

This module tests the viewer session end to end against a fake render
surface: upload, depth editing, conversion, export and teardown ordering.
"""

import asyncio
import sys
import unittest
from pathlib import Path

import cv2
import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))
sys.path.append(str(Path(__file__).resolve().parent))

from fakes import failing_service, failing_surface_factory, fake_surface_factory
from relief.errors import DecodeError, DepthSamplingError, ExportError, RenderInitError, SessionStateError
from relief.session import ViewerSession

CONFIG = {
    "renderer": {"viewport": [160, 120], "fps": 1000},
    "mesh": {"base_segments": 20},
}


def encode_png(image):
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


def checkerboard_png(size=4):
    rows, cols = np.indices((size, size))
    image = np.where((rows + cols) % 2 == 1, 255, 0).astype(np.uint8)
    return encode_png(cv2.cvtColor(image, cv2.COLOR_GRAY2BGR))


class TestViewerSession(unittest.IsolatedAsyncioTestCase):
    """Test the session lifecycle."""

    def setUp(self):
        self.session = ViewerSession(CONFIG, surface_factory=fake_surface_factory)

    def tearDown(self):
        self.session.dispose()

    async def test_upload_and_convert(self):
        """Test the checkerboard scenario through the whole session."""
        pixels = self.session.upload(checkerboard_png())
        self.assertEqual(pixels.size, (4, 4))

        result = await self.session.convert()
        z = result.mesh.grid.positions[:, 2]

        self.assertFalse(result.used_authored_depth)
        self.assertTrue(self.session.renderer.is_running)
        self.assertEqual(set(np.round(z, 6).tolist()), {0.0, 0.5})
        self.assertEqual(result.metrics["n_vertices"], 21 * 21)
        self.assertEqual(result.metrics["depth_provenance"], "computed")

    async def test_upload_downscales_display_only(self):
        """Test that display pixels are bounded while native pixels are kept."""
        session = ViewerSession({"sampler": {"max_dimension": 16}}, surface_factory=fake_surface_factory)
        session.upload(encode_png(np.zeros((40, 64, 3), dtype=np.uint8)))

        self.assertEqual(session.pixels.size, (16, 10))
        self.assertEqual(session.native_pixels.size, (64, 40))
        self.assertEqual(session.begin_edit().shape, (40, 64))
        session.dispose()

    async def test_failed_upload_resets(self):
        """Test that a bad upload leaves no state from the previous image."""
        self.session.upload(checkerboard_png())
        await self.session.convert()
        renderer = self.session.renderer
        surface = renderer.surface

        with self.assertRaises(DecodeError):
            self.session.upload(b"garbage")

        self.assertFalse(self.session.has_image)
        self.assertIsNone(self.session.mesh)
        self.assertIsNone(self.session.renderer)
        self.assertFalse(renderer.is_running)
        self.assertEqual(surface.releases, 1)

    async def test_reconvert_tears_down_previous_renderer(self):
        """Test that a new conversion releases the previous preview first."""
        self.session.upload(checkerboard_png())
        await self.session.convert()
        first = self.session.renderer
        first_surface = first.surface

        await asyncio.sleep(0.01)
        await self.session.convert()
        await asyncio.sleep(0.01)

        self.assertIsNot(self.session.renderer, first)
        self.assertFalse(first.is_running)
        self.assertTrue(first.loop_task.done())
        self.assertEqual(first_surface.releases, 1)
        self.assertTrue(self.session.renderer.is_running)

    async def test_reset_teardown(self):
        """Test that no loop stays scheduled and no surface stays referenced."""
        self.session.upload(checkerboard_png())
        await self.session.convert()
        renderer = self.session.renderer
        surface = renderer.surface
        task = renderer.loop_task

        self.session.reset()
        await asyncio.sleep(0.01)

        self.assertTrue(task.done())
        self.assertEqual(surface.releases, 1)
        self.assertIsNone(renderer.surface)
        self.assertIsNone(self.session.renderer)
        self.assertIsNone(self.session.mesh)

        with self.assertRaises(ExportError):
            self.session.export_model()
        with self.assertRaises(ExportError):
            self.session.export_snapshot()

    async def test_convert_without_image(self):
        with self.assertRaises(SessionStateError):
            await self.session.convert()

    async def test_convert_refused_while_editing(self):
        self.session.upload(checkerboard_png())
        self.session.begin_edit()
        with self.assertRaises(SessionStateError):
            await self.session.convert()

    async def test_authored_depth_drives_conversion(self):
        """Test painted depth replaces luminance and is flagged as authored."""
        self.session.upload(encode_png(np.full((20, 20, 3), 255, dtype=np.uint8)))
        self.session.begin_edit()
        tool = self.session.tool("brush")
        self.session.pointer_down(5, 10, tool)
        self.session.pointer_move(15, 10)
        self.session.pointer_up()
        authored = self.session.end_edit()

        result = await self.session.convert()

        self.assertTrue(authored.is_authored)
        self.assertTrue(result.used_authored_depth)
        self.assertTrue(self.session.used_authored_depth)
        self.assertAlmostEqual(result.mesh.grid.positions[:, 2].max(), 0.5)
        self.assertAlmostEqual(result.mesh.grid.positions[:, 2].min(), 0.0)

        # A second conversion keeps the authored field
        result = await self.session.convert()
        self.assertTrue(result.used_authored_depth)

    async def test_reupload_drops_authored_depth(self):
        self.session.upload(checkerboard_png())
        self.session.begin_edit()
        self.session.end_edit()
        self.session.upload(checkerboard_png())

        result = await self.session.convert()
        self.assertFalse(result.used_authored_depth)

    async def test_import_depth(self):
        self.session.upload(encode_png(np.full((8, 8, 3), 255, dtype=np.uint8)))
        self.session.import_depth(np.zeros((4, 4), dtype=np.uint8))

        result = await self.session.convert()
        self.assertTrue(result.used_authored_depth)
        np.testing.assert_allclose(result.mesh.grid.positions[:, 2], 0.5)

    async def test_failed_import_keeps_authored_depth(self):
        """Test that a rejected depth image leaves the previous authored field in use."""
        self.session.upload(encode_png(np.full((8, 8, 3), 255, dtype=np.uint8)))
        first = self.session.import_depth(np.zeros((8, 8), dtype=np.uint8))

        with self.assertRaises(DepthSamplingError):
            self.session.import_depth(np.zeros((0, 0), dtype=np.uint8))

        self.assertFalse(self.session.is_editing)
        self.assertIs(self.session.editor.authored, first)
        self.assertTrue(self.session.used_authored_depth)

        result = await self.session.convert()
        self.assertTrue(result.used_authored_depth)
        np.testing.assert_allclose(result.mesh.grid.positions[:, 2], 0.5)

    async def test_edit_continues_from_authored_depth(self):
        self.session.upload(encode_png(np.full((8, 8, 3), 255, dtype=np.uint8)))
        self.session.import_depth(np.zeros((8, 8), dtype=np.uint8))

        surface = self.session.begin_edit(keep_authored=True)
        self.assertTrue(np.all(surface == 0))

    async def test_service_failures_fall_back(self):
        """Test that failing services leave luminance depth and no back texture."""
        session = ViewerSession(
            CONFIG,
            surface_factory=fake_surface_factory,
            depth_service=failing_service,
            segmentation_service=failing_service,
            inpaint_service=failing_service,
        )
        session.upload(checkerboard_png())
        result = await session.convert()

        self.assertIsNone(result.segmentation)
        self.assertIsNone(result.mesh.back_texture)
        self.assertFalse(result.metrics["used_estimated_depth"])
        self.assertEqual(set(np.round(result.mesh.grid.positions[:, 2], 6).tolist()), {0.0, 0.5})
        session.dispose()

    async def test_estimated_depth_used(self):
        async def depth_service(pixels):
            return np.zeros((pixels.height, pixels.width))

        session = ViewerSession(CONFIG, surface_factory=fake_surface_factory, depth_service=depth_service)
        session.upload(checkerboard_png())
        result = await session.convert()

        self.assertTrue(result.metrics["used_estimated_depth"])
        np.testing.assert_allclose(result.mesh.grid.positions[:, 2], 0.5)
        session.dispose()

    async def test_render_init_failure(self):
        """Test that a failed preview leaves no renderer or mesh behind."""
        session = ViewerSession(CONFIG, surface_factory=failing_surface_factory)
        session.upload(checkerboard_png())

        with self.assertRaises(RenderInitError):
            await session.convert()

        self.assertIsNone(session.renderer)
        self.assertIsNone(session.mesh)

        result = await session.convert(preview=False)
        self.assertIsNotNone(result.mesh)
        self.assertTrue(session.export_model().startswith(b"glTF"))
        with self.assertRaises(ExportError):
            session.export_snapshot()
        session.dispose()

    async def test_exports(self):
        self.session.upload(checkerboard_png())
        await self.session.convert()

        self.assertTrue(self.session.export_model().startswith(b"glTF"))
        self.assertTrue(self.session.export_snapshot().startswith(b"\x89PNG"))

    async def test_resize(self):
        self.session.upload(checkerboard_png())
        await self.session.convert(viewport=(100, 50))
        self.session.resize(200, 200)
        self.assertAlmostEqual(self.session.renderer.camera.aspect, 1.0)

    async def test_context_manager(self):
        with ViewerSession(CONFIG, surface_factory=fake_surface_factory) as session:
            session.upload(checkerboard_png())
            await session.convert()
            surface = session.renderer.surface
        self.assertEqual(surface.releases, 1)


if __name__ == "__main__":
    unittest.main()
