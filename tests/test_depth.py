"""Tests for depth module.

This module tests luminance depth extraction, resampling of depth fields
with a different resolution and the choice of the depth field of record.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from relief import depth
from relief.errors import DepthSamplingError
from relief.sampler import PixelBuffer


def solid(width, height, rgb, alpha=255):
    data = np.zeros((height, width, 4), dtype=np.uint8)
    data[:, :, :3] = rgb
    data[:, :, 3] = alpha
    return PixelBuffer(data)


class TestLuminance(unittest.TestCase):
    """Test luminance depth extraction."""

    def test_reference_colours(self):
        """Test luminance of pure colours against the BT.601 weights."""
        red = depth.compute_luminance(solid(4, 4, (255, 0, 0)))
        green = depth.compute_luminance(solid(4, 4, (0, 255, 0)))
        blue = depth.compute_luminance(solid(4, 4, (0, 0, 255)))

        np.testing.assert_allclose(red.samples, 0.299, atol=1e-9)
        np.testing.assert_allclose(green.samples, 0.587, atol=1e-9)
        np.testing.assert_allclose(blue.samples, 0.114, atol=1e-9)

    def test_black_and_white(self):
        np.testing.assert_allclose(depth.compute_luminance(solid(3, 2, (0, 0, 0))).samples, 0.0)
        np.testing.assert_allclose(depth.compute_luminance(solid(3, 2, (255, 255, 255))).samples, 1.0)

    def test_alpha_ignored(self):
        """Test that transparency does not change depth."""
        opaque = depth.compute_luminance(solid(4, 4, (90, 120, 30), alpha=255))
        clear = depth.compute_luminance(solid(4, 4, (90, 120, 30), alpha=0))
        np.testing.assert_array_equal(opaque.samples, clear.samples)

    def test_shape_and_range(self):
        """Test that depth matches the image size and stays in [0, 1]."""
        rng = np.random.default_rng(0)
        data = rng.integers(0, 256, size=(17, 23, 4), dtype=np.uint8)
        field = depth.compute_luminance(PixelBuffer(data))

        self.assertEqual((field.width, field.height), (23, 17))
        self.assertGreaterEqual(field.samples.min(), 0.0)
        self.assertLessEqual(field.samples.max(), 1.0)
        self.assertEqual(field.provenance, depth.Provenance.COMPUTED)

        expected = data[:, :, :3].astype(np.float64) @ np.array([0.299, 0.587, 0.114]) / 255.0
        np.testing.assert_allclose(field.samples, expected)


class TestDepthField(unittest.TestCase):
    """Test depth field construction and sampling."""

    def test_from_raw_round_trip(self):
        raw = np.array([[0, 128], [255, 64]], dtype=np.uint8)
        field = depth.DepthField.from_raw(raw, depth.Provenance.AUTHORED)

        self.assertTrue(field.is_authored)
        np.testing.assert_array_equal(field.to_raw(), raw)

    def test_from_array(self):
        """Test that integer arrays are read as 0-255 and floats as [0, 1]."""
        ints = depth.DepthField.from_array(np.full((2, 2, 1), 255, dtype=np.uint8))
        floats = depth.DepthField.from_array(np.full((2, 2), 0.25, dtype=np.float32))

        self.assertEqual(ints.samples.shape, (2, 2))
        np.testing.assert_allclose(ints.samples, 1.0)
        np.testing.assert_allclose(floats.samples, 0.25)

    def test_clipping(self):
        field = depth.DepthField(np.array([[-0.5, 1.5]]))
        np.testing.assert_array_equal(field.samples, [[0.0, 1.0]])

    def test_invalid(self):
        with self.assertRaises(DepthSamplingError):
            depth.DepthField(np.zeros((0, 3)))
        with self.assertRaises(DepthSamplingError):
            depth.DepthField(np.zeros(5))

    def test_same_resolution_sampling(self):
        """Test that indices pass through unchanged at equal resolution."""
        field = depth.DepthField(np.arange(12, dtype=np.float64).reshape(3, 4) / 11.0)
        px = np.array([0, 3, 2])
        py = np.array([0, 2, 1])

        np.testing.assert_allclose(field.sample(px, py, 4, 3), field.samples[py, px])

    def test_rescaled_sampling(self):
        """Test proportional lookup of a field twice the image resolution."""
        samples = np.zeros((8, 8))
        samples[:4, :4] = 0.2
        samples[:4, 4:] = 0.4
        samples[4:, :4] = 0.6
        samples[4:, 4:] = 0.8
        field = depth.DepthField(samples)

        px = np.array([0, 3, 0, 3])
        py = np.array([0, 0, 3, 3])
        np.testing.assert_allclose(field.sample(px, py, 4, 4), [0.2, 0.4, 0.6, 0.8])

    def test_rescaled_sampling_clips(self):
        """Test that smaller fields never index out of bounds."""
        field = depth.DepthField(np.full((2, 3), 0.5))
        px = np.arange(100)
        py = np.arange(100)
        fx, fy = field.sample_indices(px, py, 100, 100)

        self.assertLessEqual(fx.max(), 2)
        self.assertLessEqual(fy.max(), 1)
        self.assertGreaterEqual(fx.min(), 0)

    def test_resized(self):
        field = depth.DepthField(np.array([[0.0, 1.0]]), depth.Provenance.AUTHORED)
        bigger = field.resized(4, 2)

        self.assertEqual(bigger.samples.shape, (2, 4))
        np.testing.assert_array_equal(bigger.samples[0], [0.0, 0.0, 1.0, 1.0])
        self.assertTrue(bigger.is_authored)


class TestSelectDepth(unittest.TestCase):
    """Test which field drives a conversion."""

    def setUp(self):
        self.computed = depth.DepthField(np.full((2, 2), 0.5))
        self.authored = depth.DepthField(np.zeros((4, 4)), depth.Provenance.AUTHORED)
        self.estimated = depth.DepthField(np.full((2, 2), 0.9))

    def test_computed_by_default(self):
        field, used_authored = depth.select_depth(self.computed)
        self.assertIs(field, self.computed)
        self.assertFalse(used_authored)

    def test_authored_wins(self):
        field, used_authored = depth.select_depth(self.computed, self.authored, self.estimated)
        self.assertIs(field, self.authored)
        self.assertTrue(used_authored)

    def test_estimated_replaces_computed(self):
        field, used_authored = depth.select_depth(self.computed, None, self.estimated)
        self.assertIs(field, self.estimated)
        self.assertFalse(used_authored)


if __name__ == "__main__":
    unittest.main()
