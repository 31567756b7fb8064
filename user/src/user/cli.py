"""
User CLI using Typer.

Configuration is loaded with the following priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file (~/.joinswap/config.toml)
4. Built-in defaults
"""

from __future__ import annotations

import asyncio
import secrets
from pathlib import Path
from typing import Annotated, Any

import typer
from coincurve import PrivateKey
from jscore.cli_common import log_resolved_settings, resolve_protocol_config, setup_cli
from jscore.crypto import pubkey_hex
from jscore.errors import ValidationError
from jscore.models import UTXORef
from jscore.settings import JoinSwapSettings, ensure_config_file
from loguru import logger

from user.agent import ParticipantAgent, RecoveryMethod
from user.client import SwapClient
from user.config import UserConfig

app = typer.Typer(add_completion=False)


def run_async(coro: Any) -> Any:
    return asyncio.run(coro)


def build_user_config(
    settings: JoinSwapSettings,
    # CLI overrides (None means use settings value)
    maker_host: str | None = None,
    maker_port: int | None = None,
    refund_timelock: int | None = None,
    distribution_timelock: int | None = None,
) -> UserConfig:
    protocol = resolve_protocol_config(
        settings,
        refund_timelock=refund_timelock,
        distribution_timelock=distribution_timelock,
    )
    return UserConfig(
        **protocol.model_dump(),
        maker_host=maker_host if maker_host is not None else settings.client.maker_host,
        maker_port=maker_port if maker_port is not None else settings.client.maker_port,
        connection_timeout=settings.client.connection_timeout,
    )


def create_dev_coins(amounts: list[int]) -> tuple[list[PrivateKey], list[UTXORef]]:
    """Fresh keys and made-up coins for trying the protocol without a chain."""
    keys = []
    utxos = []
    for amount in amounts:
        key = PrivateKey()
        keys.append(key)
        utxos.append(
            UTXORef(
                txid=secrets.token_hex(32), vout=0, amount=amount, owner_pubkey=pubkey_hex(key)
            )
        )
    return keys, utxos


@app.command()
def swap(
    coin: Annotated[
        list[int],
        typer.Option("--coin", "-c", help="Development coin to swap, in sats (repeatable)"),
    ],
    output: Annotated[
        list[int] | None,
        typer.Option("--output", "-o", help="Output amount in sats (repeatable)"),
    ] = None,
    maker_host: Annotated[
        str | None,
        typer.Option(help="Maker host (overrides CLIENT__MAKER_HOST)"),
    ] = None,
    maker_port: Annotated[
        int | None,
        typer.Option(help="Maker port (overrides CLIENT__MAKER_PORT)"),
    ] = None,
    refund_timelock: Annotated[
        int | None, typer.Option(help="Expected refund timelock in blocks")
    ] = None,
    distribution_timelock: Annotated[
        int | None, typer.Option(help="Expected distribution timelock in blocks")
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level"),
    ] = None,
) -> None:
    """
    Swap development coins through a maker.

    Prints the recovery plan for the final state as JSON.
    """
    settings = setup_cli(log_level)

    try:
        config = build_user_config(
            settings,
            maker_host=maker_host,
            maker_port=maker_port,
            refund_timelock=refund_timelock,
            distribution_timelock=distribution_timelock,
        )
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    log_resolved_settings(config, f"{config.maker_host}:{config.maker_port}")
    logger.warning("Using made-up development coins (development only)")

    keys, utxos = create_dev_coins(coin)
    agent = ParticipantAgent(keys, config)
    try:
        registration = agent.submit_registration(utxos, output_amounts=output or None)
    except ValidationError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    plan = run_async(SwapClient(agent, config).run(registration))
    typer.echo(plan.model_dump_json(indent=2, exclude={"transaction"}))
    if plan.method != RecoveryMethod.KEY_PATH:
        raise typer.Exit(2)


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


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":
    main()
