"""Visualization utilities for relief meshes.

This module provides the Open3D window surface used by the scene renderer,
conversion of meshes to Open3D geometry, and a matplotlib figure comparing
an image with its depth field.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from relief.depth import DepthField
from relief.errors import RenderInitError
from relief.mesh import Mesh
from relief.renderer import Camera, Light, RenderSurface
from relief.sampler import PixelBuffer

logger = logging.getLogger(__name__)


def mesh_to_open3d(mesh: Mesh) -> o3d.geometry.TriangleMesh:
    """Convert a relief mesh to a textured Open3D triangle mesh.

    Args:
        mesh: Relief mesh

    Returns:
        Open3D TriangleMesh with per-corner UVs and the colour texture
    """
    grid = mesh.grid

    o3d_mesh = o3d.geometry.TriangleMesh()
    o3d_mesh.vertices = o3d.utility.Vector3dVector(grid.positions)
    o3d_mesh.triangles = o3d.utility.Vector3iVector(grid.indices.astype(np.int32))
    o3d_mesh.vertex_normals = o3d.utility.Vector3dVector(grid.normals)

    # Open3D expects one UV per triangle corner with v measured from the top row
    corner_uvs = grid.uvs[grid.indices.reshape(-1)].copy()
    corner_uvs[:, 1] = 1.0 - corner_uvs[:, 1]
    o3d_mesh.triangle_uvs = o3d.utility.Vector2dVector(corner_uvs)
    o3d_mesh.triangle_material_ids = o3d.utility.IntVector(np.zeros(len(grid.indices), dtype=np.int32))
    o3d_mesh.textures = [o3d.geometry.Image(np.ascontiguousarray(mesh.texture.rgb))]

    return o3d_mesh


class Open3DSurface(RenderSurface):
    """Render surface backed by an Open3D visualizer window.

    Args:
        width: Window width in pixels
        height: Window height in pixels
        visible: Show the window; hidden windows still render for capture
        window_name: Window title
        background: Clear colour as RGB in [0, 1]
    """

    def __init__(
        self,
        width: int,
        height: int,
        visible: bool = True,
        window_name: str = "Relief",
        background=(0.0, 0.0, 0.0)
    ):
        self.width = width
        self.height = height
        self.visible = visible
        self.window_name = window_name
        self.background = np.asarray(background[:3], dtype=float)

        self.vis: Optional[o3d.visualization.Visualizer] = None
        self.geometry: Optional[o3d.geometry.TriangleMesh] = None
        self._base_vertices: Optional[np.ndarray] = None
        self._base_normals: Optional[np.ndarray] = None
        self._rotation = (0.0, 0.0)
        self._closed = False

        self._create_window()

    @property
    def closed(self) -> bool:
        return self._closed

    def _create_window(self) -> None:
        self.vis = o3d.visualization.Visualizer()
        ok = self.vis.create_window(
            window_name=self.window_name,
            width=self.width,
            height=self.height,
            visible=self.visible
        )
        if not ok:
            self.vis = None
            raise RenderInitError("Open3D could not create a window")

    def _apply_camera(self, camera: Camera) -> None:
        view_control = self.vis.get_view_control()
        params = view_control.convert_to_pinhole_camera_parameters()

        K = camera.intrinsic_matrix(self.width, self.height)
        params.intrinsic = o3d.camera.PinholeCameraIntrinsic(
            self.width, self.height, K[0, 0], K[1, 1], K[0, 2], K[1, 2]
        )
        params.extrinsic = camera.extrinsic_matrix()
        view_control.convert_from_pinhole_camera_parameters(params, allow_arbitrary=True)
        view_control.set_constant_z_near(camera.near)
        view_control.set_constant_z_far(camera.far)

    def _apply_lights(self, lights: List[Light]) -> None:
        # The legacy visualizer has a fixed light rig; only on/off is exposed
        opt = self.vis.get_render_option()
        opt.light_on = any(light.intensity > 0 for light in lights)
        logger.debug(f"Render surface lighting: {lights}")

    def bind(self, mesh: Mesh, camera: Camera, lights: List[Light]) -> None:
        self.geometry = mesh_to_open3d(mesh)
        self._base_vertices = np.asarray(self.geometry.vertices).copy()
        self._base_normals = np.asarray(self.geometry.vertex_normals).copy()
        self._rotation = (0.0, 0.0)

        self.vis.add_geometry(self.geometry)

        opt = self.vis.get_render_option()
        opt.background_color = self.background
        opt.mesh_show_back_face = True
        self._apply_lights(lights)
        self._apply_camera(camera)

    def draw(self, mesh: Mesh, camera: Camera, lights: List[Light]) -> None:
        rotation = (mesh.pitch, mesh.yaw)
        if rotation != self._rotation:
            R = mesh.rotation_matrix()
            self.geometry.vertices = o3d.utility.Vector3dVector(self._base_vertices @ R.T)
            self.geometry.vertex_normals = o3d.utility.Vector3dVector(self._base_normals @ R.T)
            self.vis.update_geometry(self.geometry)
            self._rotation = rotation

        if not self.vis.poll_events():
            self._closed = True
        self.vis.update_renderer()

    def resize(self, width: int, height: int, camera: Camera) -> None:
        # The legacy visualizer cannot resize its window, so it is recreated
        self.width = width
        self.height = height
        self.vis.destroy_window()
        self._create_window()
        if self.geometry is not None:
            self.vis.add_geometry(self.geometry)
            opt = self.vis.get_render_option()
            opt.background_color = self.background
            opt.mesh_show_back_face = True
        self._apply_camera(camera)

    def capture(self) -> np.ndarray:
        buffer = self.vis.capture_screen_float_buffer(do_render=True)
        rgb = (np.clip(np.asarray(buffer), 0.0, 1.0) * 255).astype(np.uint8)
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return np.concatenate([rgb, alpha], axis=2)

    def release(self) -> None:
        if self.vis is None:
            return
        self.vis.destroy_window()
        self.vis = None
        self.geometry = None


def show(mesh: Mesh, window_size: tuple = (1280, 720)) -> None:
    """Open a blocking Open3D viewer on a mesh.

    Args:
        mesh: Mesh to display
        window_size: Visualization window size
    """
    vis = o3d.visualization.Visualizer()
    vis.create_window(width=window_size[0], height=window_size[1])
    vis.add_geometry(mesh_to_open3d(mesh))

    opt = vis.get_render_option()
    opt.background_color = np.array([0.1, 0.1, 0.1])  # Dark background
    opt.mesh_show_back_face = True

    vis.run()
    vis.destroy_window()


def create_depth_map_visualization(
    pixels: PixelBuffer,
    depth: DepthField,
    output_path: str,
    colormap: str = "turbo"
) -> None:
    """Save a side-by-side figure of an image and its depth field.

    Args:
        pixels: Source image
        depth: Depth field (any resolution)
        output_path: Path to save the visualization
        colormap: Colormap used for the depth panel
    """
    fig, axs = plt.subplots(1, 2, figsize=(16, 8))

    axs[0].imshow(pixels.data)
    axs[0].set_title(f"Image ({pixels.width}x{pixels.height})")
    axs[0].axis("off")

    colormap_fn = plt.get_cmap(colormap)
    axs[1].imshow(depth.samples, cmap=colormap_fn, vmin=0.0, vmax=1.0)
    axs[1].set_title(
        f"Depth, {depth.provenance.value} "
        f"(min: {depth.samples.min():.2f}, max: {depth.samples.max():.2f})"
    )
    axs[1].axis("off")

    sm = plt.cm.ScalarMappable(cmap=colormap_fn)
    sm.set_array([])
    cbar = plt.colorbar(sm, ax=axs[1], fraction=0.046, pad=0.04)
    cbar.set_label("Depth (0 = raised, 1 = recessed)")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Depth map visualization saved to {output_path}")
