"""Resolve where the portfolio document lives on disk.

Resolution order (first match wins):
1. ``PORTFOLIO_DB_PATH``: the document itself.
2. ``PORTFOLIO_DATA_DIR``: a directory holding ``db.json``.
3. ``<repo>/data/db.json``.
"""
import os
from pathlib import Path
from typing import Optional

from folio.core.config import get_settings

DB_FILENAME = "db.json"
REPO_ROOT = Path(__file__).resolve().parent.parent.parent


def get_data_dir() -> str:
    settings = get_settings()
    if settings.portfolio_data_dir:
        return os.path.abspath(settings.portfolio_data_dir)
    if settings.portfolio_db_path:
        return os.path.dirname(os.path.abspath(settings.portfolio_db_path))
    return str(REPO_ROOT / "data")


def get_db_path(override: Optional[str] = None) -> str:
    """Absolute path of the persisted document."""
    if override:
        return os.path.abspath(override)
    settings = get_settings()
    if settings.portfolio_db_path:
        return os.path.abspath(settings.portfolio_db_path)
    return os.path.join(get_data_dir(), DB_FILENAME)
