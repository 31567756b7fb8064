"""
Tests for user.client against scripted makers on real TCP sockets.

The full swap between a MakerServer and two SwapClients lives in the
maker's test_server.py.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest
from _agent_helpers import BTC, make_coins
from jscore.network import TCPConnection, TransportError
from jscore.protocol import (
    MAKER_HANDLE,
    CertificateNonce,
    ErrorMessage,
    MessageType,
    ProtocolMessage,
    RegisterInput,
)
from jscore.registrar import IdentityRegistrar, InputCommitment

from user.agent import ParticipantAgent, RecoveryMethod, RecoveryPlan
from user.client import SwapClient
from user.config import UserConfig

MakerScript = Callable[[TCPConnection], Awaitable[None]]


async def start_maker(script: MakerScript) -> asyncio.Server:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = TCPConnection(reader, writer)
        try:
            await script(connection)
        except TransportError:
            pass
        finally:
            await connection.close()

    return await asyncio.start_server(handle, "127.0.0.1", 0)


def fast_config(port: int, **overrides) -> UserConfig:
    """Every phase deadline a fraction of a second."""
    values = {
        "maker_port": port,
        "poll_interval": 0.02,
        "connection_timeout": 2.0,
        "registration_timeout": 0.1,
        "signature_timeout": 0.1,
        "output_registration_timeout": 0.1,
        "distribution_timeout": 0.1,
        "secret_timeout": 0.1,
        "retry_timeout": 0.1,
    }
    values.update(overrides)
    return UserConfig(**values)


async def run_client(
    config: UserConfig, coins: list[int]
) -> tuple[ParticipantAgent, RecoveryPlan]:
    keys, utxos = make_coins(coins)
    agent = ParticipantAgent(keys, config)
    client = SwapClient(agent, config)
    plan = await asyncio.wait_for(client.run(agent.submit_registration(utxos)), timeout=5.0)
    return agent, plan


@pytest.mark.asyncio
async def test_silent_maker_ends_the_swap_at_the_deadline():
    received: list[ProtocolMessage] = []

    async def silent(connection: TCPConnection) -> None:
        while connection.is_connected():
            received.append(await connection.receive_message())

    server = await start_maker(silent)
    port = server.sockets[0].getsockname()[1]
    try:
        agent, plan = await run_client(fast_config(port), [BTC])
    finally:
        server.close()
        await server.wait_closed()

    assert plan.method == RecoveryMethod.NOTHING_AT_RISK
    assert agent.failure.startswith("PhaseTimeout")
    assert [m.type for m in received] == [MessageType.REGISTER_INPUT]


@pytest.mark.asyncio
async def test_maker_silent_after_nonces_is_told_about_the_abort():
    received: list[ProtocolMessage] = []
    registrar = IdentityRegistrar()

    async def stalls_after_nonces(connection: TCPConnection) -> None:
        message = await connection.receive_message()
        received.append(message)
        payload = message.parse(RegisterInput)
        commitment = InputCommitment(utxos=tuple(payload.utxos))
        nonces = [registrar.open_issuance(commitment, a) for a in payload.output_amounts]
        reply = CertificateNonce(registrar_pubkey=registrar.master_pubkey, nonces=nonces)
        await connection.send_message(ProtocolMessage.build(MAKER_HANDLE, "session-1", reply))
        while connection.is_connected():
            received.append(await connection.receive_message())

    server = await start_maker(stalls_after_nonces)
    port = server.sockets[0].getsockname()[1]
    try:
        agent, plan = await run_client(fast_config(port), [BTC])
        for _ in range(50):
            if len(received) == 3:
                break
            await asyncio.sleep(0.02)
    finally:
        server.close()
        await server.wait_closed()

    assert plan.method == RecoveryMethod.NOTHING_AT_RISK
    assert agent.failure.startswith("PhaseTimeout")
    assert [m.type for m in received] == [
        MessageType.REGISTER_INPUT,
        MessageType.CERTIFICATE_REQUEST,
        MessageType.ERROR,
    ]
    abort = received[-1]
    assert abort.sender == agent.identity_old.id
    assert abort.session_id == "session-1"
    assert abort.parse(ErrorMessage).error_type == "aborted"


@pytest.mark.asyncio
async def test_client_stops_when_the_maker_hangs_up():
    async def hangs_up(connection: TCPConnection) -> None:
        await connection.receive_message()

    server = await start_maker(hangs_up)
    port = server.sockets[0].getsockname()[1]
    try:
        # Deadlines far away: only the closed connection can end the run
        agent, plan = await run_client(fast_config(port, registration_timeout=60.0), [BTC])
    finally:
        server.close()
        await server.wait_closed()

    assert plan.method == RecoveryMethod.NOTHING_AT_RISK
    assert agent.failure is None
    assert not agent.is_finished
