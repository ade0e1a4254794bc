"""Export module.

Serializes a relief mesh to binary glTF (GLB) with its material and
texture, and the renderer's current frame to a PNG snapshot.
"""

from __future__ import annotations

import io
import logging
import time
from typing import Optional

import cv2
import numpy as np
import trimesh
from PIL import Image
from trimesh.exchange.gltf import export_glb
from trimesh.visual import TextureVisuals
from trimesh.visual.material import PBRMaterial

from relief.errors import ExportError
from relief.mesh import Grid, Mesh
from relief.renderer import SceneRenderer
from relief.sampler import PixelBuffer

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.glb"
MODEL_MIME_TYPE = "model/gltf-binary"
SNAPSHOT_FILENAME = "3dview.png"
SNAPSHOT_MIME_TYPE = "image/png"

FRONT_NODE = "relief"
BACK_NODE = "relief_back"


def _textured_trimesh(grid: Grid, texture: PixelBuffer, reverse: bool = False) -> trimesh.Trimesh:
    """Build a trimesh with a double-sided PBR material.

    Args:
        grid: Geometry source
        texture: Base colour texture
        reverse: Flip winding and normals (reverse-face fill)

    Returns:
        Unprocessed trimesh.Trimesh preserving vertex order
    """
    material = PBRMaterial(
        name="back" if reverse else "front",
        baseColorTexture=Image.fromarray(texture.data),
        metallicFactor=0.0,
        roughnessFactor=1.0,
        doubleSided=True,
    )
    visual = TextureVisuals(uv=grid.uvs, material=material)

    faces = grid.indices[:, ::-1] if reverse else grid.indices
    normals = -grid.normals if reverse else grid.normals

    return trimesh.Trimesh(
        vertices=grid.positions,
        faces=faces,
        vertex_normals=normals,
        visual=visual,
        process=False,
    )


def to_interchange_format(mesh: Optional[Mesh]) -> bytes:
    """Serialize a mesh as a self-contained GLB scene.

    The scene holds the displaced geometry with normals and UVs, a PBR
    material with the colour texture, and a node transform carrying the
    interactive rotation. A back texture, when present, is written as a
    second node with reversed winding.

    Args:
        mesh: Mesh to export

    Returns:
        GLB file contents

    Raises:
        ExportError: If there is no mesh
    """
    if mesh is None:
        raise ExportError("No mesh to export; convert an image first")

    start_time = time.perf_counter()

    scene = trimesh.Scene()
    transform = mesh.transform()
    scene.add_geometry(
        _textured_trimesh(mesh.grid, mesh.texture),
        node_name=FRONT_NODE,
        geom_name=FRONT_NODE,
        transform=transform,
    )
    if mesh.back_texture is not None:
        scene.add_geometry(
            _textured_trimesh(mesh.grid, mesh.back_texture, reverse=True),
            node_name=BACK_NODE,
            geom_name=BACK_NODE,
            transform=transform,
        )

    data = export_glb(scene, include_normals=True)

    elapsed_time = time.perf_counter() - start_time
    logger.info(f"Exported GLB: {len(data)} bytes (elapsed time: {elapsed_time:.2f}s)")
    return data


def load_interchange_format(data: bytes) -> trimesh.Scene:
    """Read GLB bytes back into a trimesh scene."""
    return trimesh.load(io.BytesIO(data), file_type="glb", force="scene")


def encode_snapshot(frame: np.ndarray) -> bytes:
    """Encode an RGBA or RGB frame as PNG bytes.

    Args:
        frame: HxWx4 or HxWx3 uint8 array

    Returns:
        PNG file contents
    """
    if frame.ndim != 3 or frame.shape[2] not in (3, 4):
        raise ExportError(f"Unexpected frame shape {frame.shape}")

    code = cv2.COLOR_RGBA2BGRA if frame.shape[2] == 4 else cv2.COLOR_RGB2BGR
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(np.ascontiguousarray(frame), code))
    if not ok:
        raise ExportError("PNG encoding failed")
    return encoded.tobytes()


def to_raster_snapshot(renderer: Optional[SceneRenderer]) -> bytes:
    """Capture the renderer's current frame as PNG bytes.

    Args:
        renderer: Live scene renderer

    Returns:
        PNG file contents

    Raises:
        ExportError: If there is no live renderer
    """
    if renderer is None or not renderer.is_live:
        raise ExportError("No live renderer to capture; convert an image first")

    frame = renderer.capture()
    data = encode_snapshot(frame)
    logger.info(f"Captured {frame.shape[1]}x{frame.shape[0]} snapshot: {len(data)} bytes")
    return data
