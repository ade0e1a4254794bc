"""Configuration loading.

Settings live in a YAML file (``config.yaml`` at the repository root by
default). Values from the file are merged over ``DEFAULT_CONFIG`` so a file
only needs to list what it changes.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

DEFAULT_CONFIG: Dict = {
    "sampler": {
        "max_dimension": 512,
    },
    "mesh": {
        "base_segments": 100,
        "min_segments": 10,
        "height_scale": 0.5,
    },
    "renderer": {
        "viewport": [800, 600],
        "fov": 45.0,
        "near": 0.1,
        "far": 1000.0,
        "camera_distance": 3.0,
        "rotation_speed": 0.005,
        "fps": 60,
        "background": [0.0, 0.0, 0.0, 0.0],
        "ambient_light": {"color": [1.0, 1.0, 1.0], "intensity": 0.4},
        "directional_light": {
            "color": [1.0, 1.0, 1.0],
            "intensity": 1.0,
            "position": [2.0, 2.0, 2.0],
        },
        "visible": True,
    },
    "editor": {
        "radius": 10,
        "brush_value": 0,
        "eraser_value": 255,
    },
    "services": {
        "timeout_s": 10.0,
    },
    "io": {
        "model_filename": "model.glb",
        "snapshot_filename": "3dview.png",
    },
}


def merge_config(base: Dict, override: Optional[Dict]) -> Dict:
    """Recursively merge ``override`` into a copy of ``base``.

    Args:
        base: Configuration providing defaults
        override: Values taking precedence (may be None)

    Returns:
        New merged configuration dictionary
    """
    merged = copy.deepcopy(base)
    if not override:
        return merged

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to configuration file. Defaults to ``config.yaml``
            next to the package; if that file is missing the built-in
            defaults are returned.

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        if not config_path.exists():
            logger.debug(f"No config file at {config_path}, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, "r") as f:
        file_config = yaml.safe_load(f) or {}

    logger.debug(f"Loaded configuration from {config_path}")
    return merge_config(DEFAULT_CONFIG, file_config)
