"""Filesystem locations used by the pipeline."""

from __future__ import annotations

import os
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_project_root() -> Path:
    """Return the repository root directory."""
    return _PROJECT_ROOT


def get_config_file() -> Path:
    """Return the path of the project configuration file.

    ``REGULATORY_CONFIG`` overrides the default ``config.json`` at the root.
    """
    override = os.environ.get("REGULATORY_CONFIG")
    if override:
        return Path(override)
    return _PROJECT_ROOT / "config.json"


def get_data_root() -> Path:
    """Return the directory holding persisted pipeline state."""
    override = os.environ.get("REGULATORY_DATA_ROOT")
    if override:
        return Path(override)
    return _PROJECT_ROOT / "data"


def get_store_file() -> Path:
    """Return the JSON snapshot file for the regulatory store."""
    return get_data_root() / "regulatory_store.json"


def ensure_directory(path: Path) -> Path:
    """Create ``path`` (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path
