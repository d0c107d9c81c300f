"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DEFAULT_DATA_ROOT = APP_ROOT / "data"

SETTINGS_FILENAME = "settings.json"
LOCAL_DATASET_FILENAME = "local_dataset.json"


def data_root() -> Path:
    """Return the configured data root without touching the filesystem."""
    override = os.getenv("KEFIR_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return DEFAULT_DATA_ROOT


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it when missing."""
    root = data_root()
    if not root.exists():
        LOGGER.info("Creating data directory %s", root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def settings_file() -> Path:
    return data_root() / SETTINGS_FILENAME


def local_dataset_file() -> Path:
    return data_root() / LOCAL_DATASET_FILENAME


def read_json_file(file_path: Path) -> Any:
    """Load a JSON document, treating a missing, empty or corrupt file as ``{}``."""
    path = Path(file_path)
    if not path.exists() or path.stat().st_size == 0:
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            return json.load(handle)
        except json.JSONDecodeError:
            LOGGER.error("JSONDecodeError for %s", path)
            return {}
