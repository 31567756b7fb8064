"""
Tests for jscore.channels, jscore.network and jscore.tasks
"""

import asyncio

import pytest

from jscore.channels import ConnectionChannel, Inbox, QueueChannel, pump_connection
from jscore.models import SwapPhase
from jscore.network import TCPConnection, TransportError, connect_direct
from jscore.protocol import MAKER_HANDLE, ProtocolMessage, SessionUpdate
from jscore.tasks import run_periodic_task


def _update(reason: str = "") -> ProtocolMessage:
    return ProtocolMessage.build(
        MAKER_HANDLE, "sid", SessionUpdate(phase=SwapPhase.FUNDED, reason=reason)
    )


@pytest.mark.asyncio
async def test_queue_channel():
    channel = QueueChannel("S1user")
    await channel.send(_update("one"))
    await channel.send(_update("two"))
    assert [m.parse(SessionUpdate).reason for m in channel.drain()] == ["one", "two"]

    await channel.close()
    with pytest.raises(TransportError):
        await channel.send(_update())


@pytest.mark.asyncio
async def test_inbox_get_timeout():
    inbox = Inbox()
    assert await inbox.get(timeout=0.01) is None

    inbox.put_nowait("S1user", _update())
    channel_id, message = await inbox.get(timeout=1.0)
    assert channel_id == "S1user"
    assert message.sender == MAKER_HANDLE
    assert inbox.empty()


@pytest.mark.asyncio
async def test_tcp_round_trip_and_pump():
    received: asyncio.Queue[ProtocolMessage] = asyncio.Queue()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = TCPConnection(reader, writer)
        message = await connection.receive_message()
        await received.put(message)
        await connection.send_message(_update("echo"))
        await connection.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async with server:
        connection = await connect_direct("127.0.0.1", port, timeout=5.0)
        channel = ConnectionChannel("S1user", connection)
        await channel.send(_update("hello"))

        inbox = Inbox()
        await asyncio.wait_for(pump_connection("S1user", connection, inbox), timeout=5.0)

        sent = await asyncio.wait_for(received.get(), timeout=5.0)
        assert sent.parse(SessionUpdate).reason == "hello"

        item = await inbox.get(timeout=1.0)
        assert item is not None
        assert item[1].parse(SessionUpdate).reason == "echo"
        assert not connection.is_connected()

        with pytest.raises(TransportError):
            await channel.send(_update())


@pytest.mark.asyncio
async def test_connect_direct_failure():
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    with pytest.raises(TransportError):
        await connect_direct("127.0.0.1", port, timeout=2.0)


@pytest.mark.asyncio
async def test_run_periodic_task_stops_on_running_check():
    calls = 0

    async def tick() -> None:
        nonlocal calls
        calls += 1

    await asyncio.wait_for(
        run_periodic_task("tick", tick, 0.001, running_check=lambda: calls < 3), timeout=2.0
    )
    assert calls == 3


@pytest.mark.asyncio
async def test_run_periodic_task_survives_errors():
    calls = 0

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")

    await asyncio.wait_for(
        run_periodic_task("flaky", flaky, 0.001, running_check=lambda: calls < 2), timeout=2.0
    )
    assert calls == 2


@pytest.mark.asyncio
async def test_run_periodic_task_gives_up_after_repeated_errors():
    async def broken() -> None:
        raise RuntimeError("down")

    completed = await asyncio.wait_for(
        run_periodic_task("broken", broken, 0.001, max_consecutive_errors=3), timeout=2.0
    )
    assert completed == 0
