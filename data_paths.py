"""Centralized helpers for resolving the application's data and reference directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.environ.get("STOREFRONT_DATA_DIR") or APP_ROOT / "data")
REFERENCE_ROOT = APP_ROOT / "reference"
ZIP_DATABASE_FILE = REFERENCE_ROOT / "zip_code_database.csv"


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it as needed."""
    if not DATA_ROOT.exists():
        LOGGER.info("Creating data directory %s", DATA_ROOT)
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return DATA_ROOT


def resolve_zip_database(override: str | os.PathLike | None = None) -> Path:
    """Return the postal reference CSV, preferring an explicit override."""
    if override:
        return Path(override).expanduser().resolve()
    return ZIP_DATABASE_FILE
