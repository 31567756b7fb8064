"""
Maker CLI using Typer.

Configuration is loaded with the following priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file (~/.joinswap/config.toml)
4. Built-in defaults
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Annotated, Any

import typer
from jscore.cli_common import log_resolved_settings, resolve_protocol_config, setup_cli
from jscore.memory import InMemoryBroadcaster, StaticMakerWallet
from jscore.settings import JoinSwapSettings, ensure_config_file
from loguru import logger

from maker.config import MakerConfig
from maker.coordinator import ProtocolCoordinator
from maker.server import MakerServer

app = typer.Typer(add_completion=False)

# Size of the coins the development wallet is seeded with
DEV_COIN_SIZE = 100_000_000


def run_async(coro: Any) -> Any:
    return asyncio.run(coro)


def build_maker_config(
    settings: JoinSwapSettings,
    # CLI overrides (None means use settings value)
    host: str | None = None,
    port: int | None = None,
    data_dir: Path | None = None,
    min_participants: int | None = None,
    max_participants: int | None = None,
    refund_timelock: int | None = None,
    distribution_timelock: int | None = None,
    registration_timeout: float | None = None,
) -> MakerConfig:
    protocol = resolve_protocol_config(
        settings,
        min_participants=min_participants,
        max_participants=max_participants,
        refund_timelock=refund_timelock,
        distribution_timelock=distribution_timelock,
        registration_timeout=registration_timeout,
    )
    return MakerConfig(
        **protocol.model_dump(),
        host=host if host is not None else settings.maker.host,
        port=port if port is not None else settings.maker.port,
        data_dir=data_dir if data_dir is not None else settings.get_data_dir(),
        archive_sessions=settings.maker.archive_sessions,
    )


def create_dev_wallet(liquidity: int) -> StaticMakerWallet:
    """In-memory wallet holding ``liquidity`` sats split into fixed-size coins."""
    wallet = StaticMakerWallet()
    remaining = liquidity
    while remaining > 0:
        amount = min(DEV_COIN_SIZE, remaining)
        wallet.add_coin(amount)
        remaining -= amount
    return wallet


@app.command()
def start(
    host: Annotated[
        str | None,
        typer.Option(help="Bind address (overrides MAKER__HOST)"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Listen port (overrides MAKER__PORT)"),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option(
            "--data-dir",
            "-d",
            envvar="JOINSWAP_DATA_DIR",
            help="Data directory for JoinSwap files",
        ),
    ] = None,
    liquidity: Annotated[
        int | None,
        typer.Option(help="Sats to seed the development wallet with (overrides MAKER__LIQUIDITY)"),
    ] = None,
    min_participants: Annotated[
        int | None, typer.Option(help="Minimum users per session")
    ] = None,
    max_participants: Annotated[
        int | None, typer.Option(help="Start a session as soon as this many users registered")
    ] = None,
    refund_timelock: Annotated[
        int | None, typer.Option(help="Relative timelock (blocks) of the users' refund")
    ] = None,
    distribution_timelock: Annotated[
        int | None, typer.Option(help="Relative timelock (blocks) of the maker refund path")
    ] = None,
    registration_timeout: Annotated[
        float | None, typer.Option(help="Seconds to collect registrations per session")
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level"),
    ] = None,
) -> None:
    """
    Start the JoinSwap maker.

    Configuration is loaded from ~/.joinswap/config.toml (or $JOINSWAP_DATA_DIR/config.toml),
    environment variables, and CLI arguments. CLI arguments have the highest priority.
    """
    settings = setup_cli(log_level)
    ensure_config_file(settings.get_data_dir())

    try:
        config = build_maker_config(
            settings,
            host=host,
            port=port,
            data_dir=data_dir,
            min_participants=min_participants,
            max_participants=max_participants,
            refund_timelock=refund_timelock,
            distribution_timelock=distribution_timelock,
            registration_timeout=registration_timeout,
        )
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    log_resolved_settings(config, f"{config.host}:{config.port}")

    effective_liquidity = liquidity if liquidity is not None else settings.maker.liquidity
    if effective_liquidity <= 0:
        logger.error("No liquidity: set --liquidity or MAKER__LIQUIDITY")
        raise typer.Exit(1)
    logger.warning(
        f"Using in-memory wallet and broadcaster with {effective_liquidity:,} sats "
        "(development only)"
    )

    coordinator = ProtocolCoordinator(
        config, create_dev_wallet(effective_liquidity), InMemoryBroadcaster()
    )
    server = MakerServer(coordinator, config)

    async def run_server() -> None:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info("Received shutdown signal")
            asyncio.create_task(server.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            await server.stop()

    try:
        run_async(run_server())
    except KeyboardInterrupt:
        logger.info("Shutting down maker...")


@app.command()
def config_init(
    data_dir: Annotated[
        Path | None,
        typer.Option(
            "--data-dir",
            "-d",
            envvar="JOINSWAP_DATA_DIR",
            help="Data directory for JoinSwap files",
        ),
    ] = None,
) -> None:
    """Initialize the config file with default settings."""
    from jscore.paths import get_default_data_dir
    from jscore.settings import reset_settings

    reset_settings()

    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = ensure_config_file(data_dir)
    typer.echo(f"Config file created at: {config_path}")
    typer.echo("\nAll settings are commented out by default.")
    typer.echo("Edit the file to customize your configuration.")


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":
    main()
