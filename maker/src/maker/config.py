"""
Maker configuration.
"""

from __future__ import annotations

from pathlib import Path

from jscore.config import ProtocolConfig
from pydantic import Field


class MakerConfig(ProtocolConfig):
    host: str = "127.0.0.1"
    port: int = Field(default=4242, ge=0, le=65535)

    data_dir: Path | None = None
    archive_sessions: bool = True

    tick_interval: float = Field(default=1.0, gt=0.0)

    model_config = {"frozen": False}
