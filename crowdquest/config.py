import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "image": {
        "max_dimension": 1200,
        "jpeg_quality": 85,
    },
    "generation": {
        "min_pages": 1,
        "max_pages": 5,
        "default_pages": 3,
        "status_interval": 2.5,
        "loading_messages": [
            "Sketching characters...",
            "Drafting the scenery...",
            "Hiding you deep in the crowd...",
            "Adding funny little details...",
            "Applying the cartoon filter...",
        ],
        "quest_item_count": 5,
        "motifs": {},
    },
    "api": {
        "timeout": 120,
        "temperature": 0.8,
        "locate_temperature": 0.1,
    },
    "library": {
        "path": "crowdquest_library.json",
        "key": "crowd_quest_library",
    },
    "logging": {
        "file": "logs/crowdquest.log",
        "level": "INFO",
        "rotation": "10 MB",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a YAML file, filling gaps with defaults.

    Environment variables (API key, model names) are loaded from ``.env`` as a
    side effect so the API client can pick them up.
    """
    load_dotenv()

    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if not path.exists():
        if config_path:
            logger.warning(f"Configuration file not found: {path}. Using defaults.")
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping at the top level")

    logger.debug(f"Loaded configuration from {path}")
    return _deep_merge(DEFAULT_CONFIG, loaded)
