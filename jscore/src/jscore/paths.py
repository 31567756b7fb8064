"""
Shared path utilities for JoinSwap data directories.
"""

from __future__ import annotations

import os
from pathlib import Path


def get_default_data_dir() -> Path:
    """
    Get the default JoinSwap data directory.

    Returns ~/.joinswap or $JOINSWAP_DATA_DIR if set.
    Creates the directory if it doesn't exist.
    """
    env_path = os.getenv("JOINSWAP_DATA_DIR")
    data_dir = Path(env_path) if env_path else Path.home() / ".joinswap"

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_sessions_dir(data_dir: Path | None = None) -> Path:
    """
    Directory holding archived session summaries.

    Args:
        data_dir: Optional data directory (defaults to get_default_data_dir())
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    sessions_dir = data_dir / "sessions"
    sessions_dir.mkdir(parents=True, exist_ok=True)
    return sessions_dir
