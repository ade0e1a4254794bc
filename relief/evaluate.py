"""Conversion metrics and timing utilities.

This module collects statistics describing a conversion (mesh size, depth
range, relief height) and times pipeline stages.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Union

import numpy as np

from relief.depth import DepthField
from relief.mesh import Mesh

logger = logging.getLogger(__name__)


def depth_statistics(depth: DepthField) -> Dict[str, float]:
    """Summary statistics of a depth field.

    Args:
        depth: Depth field

    Returns:
        Dictionary with min, max, mean, dynamic range and total variation
        (mean absolute gradient, lower is smoother)
    """
    samples = depth.samples
    grad_x = np.abs(np.diff(samples, axis=1)).mean() if samples.shape[1] > 1 else 0.0
    grad_y = np.abs(np.diff(samples, axis=0)).mean() if samples.shape[0] > 1 else 0.0

    return {
        "min": float(samples.min()),
        "max": float(samples.max()),
        "mean": float(samples.mean()),
        "dynamic_range": float(samples.max() - samples.min()),
        "total_variation": float(grad_x + grad_y),
    }


class Timer:
    """Context manager measuring wall time of a block."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def elapsed(self) -> float:
        """Elapsed seconds; frozen once the timer has stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class ConversionMetrics:
    """Statistics of a single image-to-mesh conversion."""

    def __init__(self):
        self.metrics = {
            "image_width": 0,
            "image_height": 0,
            "depth_width": 0,
            "depth_height": 0,
            "depth_provenance": None,
            "used_authored_depth": False,
            "used_estimated_depth": False,
            "width_segments": 0,
            "height_segments": 0,
            "n_vertices": 0,
            "n_triangles": 0,
            "relief_height": 0.0,
            "depth": {},
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, bool, str, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def compute_depth_metrics(self, depth: DepthField) -> None:
        self.metrics["depth_width"] = depth.width
        self.metrics["depth_height"] = depth.height
        self.metrics["depth_provenance"] = depth.provenance.value
        self.metrics["depth"] = depth_statistics(depth)

    def compute_mesh_metrics(self, mesh: Mesh) -> None:
        """Record image, grid and relief sizes of a built mesh."""
        z = mesh.grid.positions[:, 2]
        self.metrics["image_width"] = mesh.texture.width
        self.metrics["image_height"] = mesh.texture.height
        self.metrics["width_segments"] = mesh.width_segments
        self.metrics["height_segments"] = mesh.height_segments
        self.metrics["n_vertices"] = mesh.grid.vertex_count
        self.metrics["n_triangles"] = mesh.grid.triangle_count
        self.metrics["relief_height"] = float(z.max() - z.min())

    def to_dict(self) -> Dict:
        return dict(self.metrics, depth=dict(self.metrics["depth"]),
                    stage_timings=dict(self.metrics["stage_timings"]))

    def summary(self) -> str:
        """Human-readable summary of the conversion."""
        lines = [
            "Conversion Metrics:",
            f"  Image: {self.metrics['image_width']}x{self.metrics['image_height']}",
            f"  Depth: {self.metrics['depth_width']}x{self.metrics['depth_height']} "
            f"({self.metrics['depth_provenance']})",
            f"  Grid: {self.metrics['width_segments']}x{self.metrics['height_segments']} segments",
            f"  Vertices: {self.metrics['n_vertices']}",
            f"  Triangles: {self.metrics['n_triangles']}",
            f"  Relief height: {self.metrics['relief_height']:.4f}",
        ]

        if self.metrics["depth"]:
            lines.append(f"  Depth range: {self.metrics['depth']['dynamic_range']:.4f}")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
