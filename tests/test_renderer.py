"""Tests for renderer module.

This module tests the scene renderer lifecycle against a fake render
surface: the cooperative frame loop, resizing, pointer rotation and the
cancel-before-release disposal order.
"""

import asyncio
import math
import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))
sys.path.append(str(Path(__file__).resolve().parent))

from fakes import FakeSurface, failing_surface_factory, fake_surface_factory, unavailable_surface_factory
from relief.depth import compute_luminance
from relief.errors import RenderInitError, SessionStateError
from relief.mesh import build_mesh
from relief.renderer import Camera, Light, RendererState, SceneRenderer, default_lights
from relief.sampler import PixelBuffer


def make_mesh():
    data = np.full((8, 16, 4), 100, dtype=np.uint8)
    pixels = PixelBuffer(data)
    return build_mesh(pixels, compute_luminance(pixels), {"base_segments": 10})


class TestCamera(unittest.TestCase):
    """Test camera matrices."""

    def test_defaults(self):
        camera = Camera()
        self.assertEqual(camera.fov, 45.0)
        self.assertEqual(camera.near, 0.1)
        self.assertEqual(camera.far, 1000.0)
        np.testing.assert_allclose(camera.position, [0.0, 0.0, 3.0])

    def test_view_matrix(self):
        """Test that the origin lies 3 units in front of the camera."""
        V = Camera().view_matrix()
        origin = V @ np.array([0.0, 0.0, 0.0, 1.0])
        np.testing.assert_allclose(origin[:3], [0.0, 0.0, -3.0])

    def test_projection_maps_near_and_far(self):
        camera = Camera(aspect=4 / 3)
        P = camera.projection_matrix()

        near = P @ np.array([0.0, 0.0, -camera.near, 1.0])
        far = P @ np.array([0.0, 0.0, -camera.far, 1.0])
        self.assertAlmostEqual(near[2] / near[3], -1.0)
        self.assertAlmostEqual(far[2] / far[3], 1.0)

    def test_intrinsics(self):
        K = Camera(fov=90.0).intrinsic_matrix(800, 600)
        self.assertAlmostEqual(K[1, 1], 300.0)
        self.assertAlmostEqual(K[0, 0], K[1, 1])

    def test_extrinsic_looks_down_positive_z(self):
        E = Camera().extrinsic_matrix()
        origin = E @ np.array([0.0, 0.0, 0.0, 1.0])
        np.testing.assert_allclose(origin[:3], [0.0, 0.0, 3.0])


class TestLights(unittest.TestCase):

    def test_default_lights(self):
        lights = default_lights()
        self.assertEqual([light.kind for light in lights], ["ambient", "directional"])
        self.assertAlmostEqual(lights[0].intensity, 0.4)
        np.testing.assert_allclose(lights[1].direction, -np.ones(3) / math.sqrt(3))

    def test_invalid_kind(self):
        with self.assertRaises(ValueError):
            Light("spot")


class TestSceneRenderer(unittest.IsolatedAsyncioTestCase):
    """Test the renderer lifecycle with a fake surface."""

    def setUp(self):
        self.config = {"viewport": [320, 240], "fps": 1000}
        self.mesh = make_mesh()
        FakeSurface.reset_instances()

    async def test_frame_loop_draws(self):
        """Test that the frame loop keeps drawing until disposed."""
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh)
        surface = renderer.surface

        self.assertTrue(renderer.is_live)
        self.assertTrue(renderer.is_running)
        self.assertEqual(surface.binds, 1)
        self.assertAlmostEqual(renderer.camera.aspect, 320 / 240)

        await asyncio.sleep(0.05)
        self.assertGreater(surface.draws, 1)

        renderer.dispose()

    async def test_dispose_cancels_before_release(self):
        """Test that no frames are drawn after disposal and release happens once."""
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh)
        surface = renderer.surface
        task = renderer.loop_task

        await asyncio.sleep(0.02)
        renderer.dispose()
        draws = surface.draws

        await asyncio.sleep(0.02)
        self.assertTrue(task.done())
        self.assertEqual(surface.draws, draws)
        self.assertEqual(surface.releases, 1)
        self.assertFalse(renderer.is_running)
        self.assertEqual(renderer.state, RendererState.DISPOSED)
        self.assertIsNone(renderer.surface)

        # Idempotent
        renderer.dispose()
        self.assertEqual(surface.releases, 1)

    async def test_frame_loop_stops_when_surface_closed(self):
        """Test that closing the window ends the frame loop."""
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh)
        surface = renderer.surface
        task = renderer.loop_task

        await asyncio.sleep(0.01)
        surface.is_closed = True
        await asyncio.sleep(0.02)
        draws = surface.draws
        await asyncio.sleep(0.02)

        self.assertTrue(task.done())
        self.assertFalse(renderer.is_running)
        self.assertEqual(surface.draws, draws)

        renderer.dispose()
        self.assertEqual(surface.releases, 1)

    async def test_dispose_from_idle(self):
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.dispose()
        self.assertEqual(renderer.state, RendererState.DISPOSED)

    async def test_no_restart_after_dispose(self):
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh)
        renderer.dispose()
        with self.assertRaises(SessionStateError):
            renderer.start(self.mesh)

    async def test_bind_failure_releases_surface(self):
        """Test that a failed initialization tears down the partial surface."""
        renderer = SceneRenderer(self.config, failing_surface_factory)

        with self.assertRaises(RenderInitError):
            renderer.start(self.mesh)

        self.assertEqual(FakeSurface.instances[-1].releases, 1)
        self.assertIsNone(renderer.surface)
        self.assertIsNone(renderer.loop_task)
        self.assertFalse(renderer.is_live)

    async def test_factory_failure(self):
        renderer = SceneRenderer(self.config, unavailable_surface_factory)
        with self.assertRaises(RenderInitError):
            renderer.start(self.mesh)
        self.assertIsNone(renderer.surface)

    async def test_invalid_viewport(self):
        renderer = SceneRenderer(self.config, fake_surface_factory)
        with self.assertRaises(RenderInitError):
            renderer.start(self.mesh, viewport=(0, 240))

    async def test_resize_keeps_loop(self):
        """Test that resizing updates aspect without restarting the loop."""
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh)
        task = renderer.loop_task

        renderer.resize(400, 100)

        self.assertAlmostEqual(renderer.camera.aspect, 4.0)
        self.assertEqual(renderer.surface.resizes, 1)
        self.assertEqual((renderer.surface.width, renderer.surface.height), (400, 100))
        self.assertIs(renderer.loop_task, task)
        self.assertTrue(renderer.is_running)

        renderer.resize(0, 100)
        self.assertEqual(renderer.surface.resizes, 1)

        renderer.dispose()

    async def test_pointer_rotation(self):
        """Test drag deltas rotate the mesh at 0.005 radians per pixel."""
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh, animate=False)

        renderer.pointer_down(100, 100)
        renderer.pointer_move(120, 90)
        renderer.pointer_move(130, 90)
        renderer.pointer_up()
        renderer.pointer_move(500, 500)

        self.assertAlmostEqual(self.mesh.yaw, 30 * 0.005)
        self.assertAlmostEqual(self.mesh.pitch, -10 * 0.005)

        renderer.dispose()

    async def test_capture(self):
        renderer = SceneRenderer(self.config, fake_surface_factory)
        renderer.start(self.mesh, animate=False)

        frame = renderer.capture()
        self.assertEqual(frame.shape, (240, 320, 4))
        self.assertEqual(renderer.frame_count, 1)

        renderer.dispose()
        with self.assertRaises(SessionStateError):
            renderer.capture()


class TestSceneRendererWithoutLoop(unittest.TestCase):

    def test_animate_requires_event_loop(self):
        """Test that the frame loop cannot start outside an event loop."""
        renderer = SceneRenderer({"viewport": [64, 64]}, fake_surface_factory)
        with self.assertRaises(RenderInitError):
            renderer.start(make_mesh())
        self.assertIsNone(renderer.surface)

    def test_render_frame_without_loop(self):
        renderer = SceneRenderer({"viewport": [64, 64]}, fake_surface_factory)
        renderer.start(make_mesh(), animate=False)
        self.assertTrue(renderer.render_frame())
        renderer.dispose()
        self.assertFalse(renderer.render_frame())


if __name__ == "__main__":
    unittest.main()
