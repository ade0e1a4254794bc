#!/usr/bin/env python3
"""
Image Relief Pipeline

This script turns one image, or every image in a folder, into a textured
relief mesh: the image is sampled into a depth field, a displaced grid is
built from it and the result is previewed, exported as a GLB model and
captured as a PNG snapshot.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
from tqdm import tqdm

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from relief import export, visualise
from relief.config import load_config
from relief.errors import RenderInitError
from relief.session import ViewerSession


# Set up logging
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")

IMAGE_EXTENSIONS = ["*.jpg", "*.jpeg", "*.png", "*.bmp", "*.webp", "*.tif", "*.tiff"]


def list_images(image_path: str) -> List[Path]:
    """List image files to convert.

    Args:
        image_path: Path to a single image or a directory of images

    Returns:
        Sorted list of image paths
    """
    path = Path(image_path)
    if path.is_file():
        return [path]

    logger.info(f"Reading images from {image_path}")

    image_files = set()
    for ext in IMAGE_EXTENSIONS:
        image_files.update(path.glob(ext))
        image_files.update(path.glob(ext.upper()))

    image_files = sorted(image_files)
    if not image_files:
        logger.error(f"No images found in {image_path}")
        sys.exit(1)

    logger.info(f"Found {len(image_files)} images")
    return image_files


def read_depth_image(depth_path: str) -> np.ndarray:
    """Read a painted grayscale depth image (0 raised, 255 recessed)."""
    depth = cv2.imread(str(depth_path), cv2.IMREAD_GRAYSCALE)
    if depth is None:
        raise FileNotFoundError(f"Could not read depth image {depth_path}")
    return depth


async def view_until_closed(session: ViewerSession, poll_interval: float = 0.1) -> None:
    """Keep the live preview running until its window is closed."""
    renderer = session.renderer
    while renderer is not None and renderer.is_running:
        if renderer.surface is None or renderer.surface.closed:
            break
        await asyncio.sleep(poll_interval)


async def convert_image(
    session: ViewerSession,
    image_file: Path,
    output_dir: str,
    config: Dict,
    depth_image: Optional[np.ndarray] = None,
    visualise_results: bool = False,
    view: bool = False
) -> Dict:
    """Convert one image and save its results.

    Args:
        session: Viewer session to use
        image_file: Image to convert
        output_dir: Directory receiving the results of this image
        config: Configuration dictionary
        depth_image: Optional painted depth image used as authored depth
        visualise_results: Save a figure of image and depth
        view: Keep an interactive preview open until it is closed

    Returns:
        Conversion metrics
    """
    os.makedirs(output_dir, exist_ok=True)

    with open(image_file, "rb") as f:
        session.upload(f.read())

    if depth_image is not None:
        session.import_depth(depth_image)

    try:
        result = await session.convert(animate=view)
    except RenderInitError as e:
        logger.warning(f"No preview available, exporting the model only: {e}")
        result = await session.convert(preview=False)

    io_config = config.get("io", {})
    model_path = os.path.join(output_dir, io_config.get("model_filename", export.MODEL_FILENAME))
    with open(model_path, "wb") as f:
        f.write(session.export_model())
    logger.info(f"Saved model to {model_path}")

    if session.renderer is not None:
        snapshot_path = os.path.join(output_dir, io_config.get("snapshot_filename", export.SNAPSHOT_FILENAME))
        with open(snapshot_path, "wb") as f:
            f.write(session.export_snapshot())
        logger.info(f"Saved snapshot to {snapshot_path}")

    cv2.imwrite(os.path.join(output_dir, "depth.png"), session.depth.to_raw())

    if visualise_results:
        visualise.create_depth_map_visualization(
            session.pixels,
            session.depth,
            os.path.join(output_dir, "depth_visualization.png")
        )

    if view and session.renderer is not None:
        logger.info("Previewing mesh, close the window to continue")
        await view_until_closed(session)

    metrics = dict(result.metrics, image=str(image_file))
    with open(os.path.join(output_dir, "report.json"), "w") as f:
        json.dump(metrics, f, indent=2)

    return metrics


async def run_batch(
    image_files: List[Path],
    output_dir: str,
    config: Dict,
    depth_image: Optional[np.ndarray] = None,
    visualise_results: bool = False,
    view: bool = False
) -> List[Dict]:
    reports = []
    with ViewerSession(config) as session:
        for image_file in tqdm(image_files, desc="Converting images"):
            image_output_dir = output_dir if len(image_files) == 1 else os.path.join(output_dir, image_file.stem)
            reports.append(await convert_image(
                session,
                image_file,
                image_output_dir,
                config,
                depth_image,
                visualise_results,
                view
            ))
    return reports


def run_pipeline(
    image_path: str,
    output_dir: str,
    config_path: Optional[str] = None,
    depth_path: Optional[str] = None,
    visualise_results: bool = False,
    view: bool = False
) -> List[Dict]:
    """Run the image relief pipeline.

    Args:
        image_path: Path to an image or a directory of images
        output_dir: Path to output directory
        config_path: Path to configuration file
        depth_path: Painted depth image applied to every input image
        visualise_results: Whether to save depth visualizations
        view: Whether to open an interactive preview per image

    Returns:
        List of conversion metrics, one per image
    """
    start_time = time.perf_counter()

    os.makedirs(output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    try:
        config = load_config(config_path)
        config["renderer"]["visible"] = view

        image_files = list_images(image_path)
        depth_image = read_depth_image(depth_path) if depth_path is not None else None

        reports = asyncio.run(run_batch(
            image_files,
            output_dir,
            config,
            depth_image,
            visualise_results,
            view
        ))
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()

    elapsed_time = time.perf_counter() - start_time
    logger.info(f"Converted {len(reports)} images (elapsed time: {elapsed_time:.2f}s)")
    return reports


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Image Relief Pipeline")
    parser.add_argument(
        "--image", "-i", dest="image_path", required=True,
        help="Path to an image or a directory containing images"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/run1",
        help="Path to output directory"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--depth", "-d", dest="depth_path", default=None,
        help="Painted grayscale depth image used instead of luminance"
    )
    parser.add_argument(
        "--visualise", "-v", dest="visualise", action="store_true",
        help="Save a depth map visualization"
    )
    parser.add_argument(
        "--view", dest="view", action="store_true",
        help="Open an interactive preview window"
    )

    args = parser.parse_args()

    try:
        run_pipeline(
            args.image_path,
            args.output_dir,
            args.config_path,
            args.depth_path,
            args.visualise,
            args.view
        )
    except Exception as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
