"""
Common CLI components for JoinSwap.

Resolution helpers shared by the maker and user CLIs. Parameter
definitions stay in each CLI module; jscore itself does not depend on typer.

Usage:
    from jscore.cli_common import resolve_protocol_config, setup_cli

    @app.command()
    def start(
        refund_timelock: Annotated[int | None, typer.Option("--refund-timelock")] = None,
        ...
    ):
        settings = setup_cli(log_level)
        protocol = resolve_protocol_config(settings, refund_timelock=refund_timelock)
"""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from jscore.config import ProtocolConfig
from jscore.settings import JoinSwapSettings, get_settings, reset_settings


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None) -> JoinSwapSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"
    """
    reset_settings()
    settings = get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_protocol_config(settings: JoinSwapSettings, **overrides: Any) -> ProtocolConfig:
    """
    Resolve protocol parameters with priority: CLI > Settings (env + config) > Defaults.

    Overrides set to None are ignored.
    """
    values = settings.protocol.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ProtocolConfig(**values)


def log_resolved_settings(protocol: ProtocolConfig, endpoint: str | None = None) -> None:
    if endpoint:
        logger.info(f"Endpoint: {endpoint}")
    logger.info(
        f"Refund timelock: {protocol.refund_timelock} blocks, "
        f"distribution timelock: {protocol.distribution_timelock} blocks"
    )
    logger.info(
        f"Participants: {protocol.min_participants}-{protocol.max_participants}, "
        f"retries: {protocol.message_retries}"
    )


__all__ = [
    "setup_logging",
    "setup_cli",
    "resolve_protocol_config",
    "log_resolved_settings",
]
