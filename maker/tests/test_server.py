"""
Swap over real TCP connections: MakerServer and two SwapClients.
"""

from __future__ import annotations

import asyncio

import pytest
from _swap_harness import BTC, make_coins
from coincurve import PrivateKey
from jscore.channels import ConnectionChannel
from jscore.crypto import pubkey_hex
from jscore.memory import InMemoryBroadcaster
from jscore.models import SwapPhase
from jscore.network import connect_direct
from jscore.protocol import ErrorMessage, MessageType, ProtocolMessage, RegisterInput
from user.agent import ParticipantAgent, RecoveryMethod
from user.client import SwapClient
from user.config import UserConfig

from maker.config import MakerConfig
from maker.coordinator import ProtocolCoordinator
from maker.server import MakerServer


@pytest.mark.asyncio
async def test_swap_over_tcp(wallet, tmp_path):
    config = MakerConfig(
        port=0,
        min_participants=2,
        max_participants=2,
        data_dir=tmp_path,
        archive_sessions=False,
        tick_interval=0.05,
    )
    broadcaster = InMemoryBroadcaster()
    coordinator = ProtocolCoordinator(config, wallet, broadcaster)
    server = MakerServer(coordinator, config)
    await server.start()

    try:
        user_config = UserConfig(maker_port=server.port, poll_interval=0.05)
        runs = []
        agents = []
        for coins, outputs in (([3 * BTC], [BTC, 2 * BTC]), ([2 * BTC], None)):
            keys, utxos = make_coins(coins)
            agent = ParticipantAgent(keys, user_config)
            agents.append(agent)
            registration = agent.submit_registration(utxos, output_amounts=outputs)
            runs.append(SwapClient(agent, user_config).run(registration))

        plans = await asyncio.wait_for(asyncio.gather(*runs), timeout=30.0)
    finally:
        await server.stop()

    assert [p.method for p in plans] == [RecoveryMethod.KEY_PATH, RecoveryMethod.KEY_PATH]
    assert all(agent.phase == SwapPhase.COMPLETE for agent in agents)

    (session,) = coordinator.sessions.values()
    assert session.phase == SwapPhase.COMPLETE
    assert len(session.distributions) == 3


@pytest.mark.asyncio
async def test_client_gives_up_without_maker(tmp_path):
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    keys, utxos = make_coins([BTC])
    user_config = UserConfig(maker_port=port, connection_timeout=2.0)
    agent = ParticipantAgent(keys, user_config)
    plan = await SwapClient(agent, user_config).run(agent.submit_registration(utxos))

    assert plan.method == RecoveryMethod.NOTHING_AT_RISK


async def _receive(connection, timeout: float = 2.0) -> ProtocolMessage:
    return await asyncio.wait_for(connection.receive_message(), timeout=timeout)


def _registration(handle: str) -> ProtocolMessage:
    _, utxos = make_coins([BTC])
    payload = RegisterInput(
        key_pubkey=pubkey_hex(PrivateKey()),
        hash_pubkey=pubkey_hex(PrivateKey()),
        utxos=utxos,
        refund_pubkey=pubkey_hex(PrivateKey()),
        output_amounts=[BTC // 2],
    )
    return ProtocolMessage.build(handle, "", payload)


@pytest.mark.asyncio
async def test_live_handle_cannot_be_taken_over(wallet, tmp_path):
    config = MakerConfig(port=0, data_dir=tmp_path, archive_sessions=False, tick_interval=0.05)
    coordinator = ProtocolCoordinator(config, wallet, InMemoryBroadcaster())
    server = MakerServer(coordinator, config)
    await server.start()
    owner = await connect_direct("127.0.0.1", server.port)
    intruder = await connect_direct("127.0.0.1", server.port)

    try:
        await owner.send_message(_registration("S1owner"))
        assert (await _receive(owner)).type == MessageType.CERTIFICATE_NONCE

        await intruder.send_message(_registration("S1owner"))
        with pytest.raises(asyncio.TimeoutError):
            await _receive(intruder, timeout=0.3)
        channel = coordinator.channels["S1owner"]
        assert isinstance(channel, ConnectionChannel)
        assert channel.connection.is_connected()
        (session,) = coordinator.sessions.values()
        assert list(session.registrations) == ["S1owner"]

        # Once the owner is gone the handle can be bound again
        await owner.close()
        for _ in range(50):
            if "S1owner" not in coordinator.channels:
                break
            await asyncio.sleep(0.02)
        await intruder.send_message(_registration("S1owner"))
        reply = await _receive(intruder)
        assert reply.parse(ErrorMessage).error_type == "InvalidUTXO"
    finally:
        await owner.close()
        await intruder.close()
        await server.stop()
