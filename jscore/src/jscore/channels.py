"""
Per-participant message channels.

The coordinator writes to one Channel per participant and reads every
inbound message from a single merged Inbox, so all session state is
touched from one task only.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from loguru import logger

from jscore.network import Connection, TransportError
from jscore.protocol import ProtocolMessage


class Channel(ABC):
    def __init__(self, channel_id: str):
        self.channel_id = channel_id

    @abstractmethod
    async def send(self, message: ProtocolMessage) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class QueueChannel(Channel):
    """In-process channel backed by an asyncio queue."""

    def __init__(self, channel_id: str, queue: asyncio.Queue[ProtocolMessage] | None = None):
        super().__init__(channel_id)
        self.queue: asyncio.Queue[ProtocolMessage] = queue or asyncio.Queue()
        self.closed = False

    async def send(self, message: ProtocolMessage) -> None:
        if self.closed:
            raise TransportError(f"Channel {self.channel_id} closed")
        await self.queue.put(message)

    async def receive(self) -> ProtocolMessage:
        return await self.queue.get()

    def drain(self) -> list[ProtocolMessage]:
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages

    async def close(self) -> None:
        self.closed = True


class ConnectionChannel(Channel):
    """Channel over a network connection."""

    def __init__(self, channel_id: str, connection: Connection):
        super().__init__(channel_id)
        self.connection = connection

    async def send(self, message: ProtocolMessage) -> None:
        await self.connection.send_message(message)

    async def close(self) -> None:
        await self.connection.close()


class Inbox:
    """Merged inbound stream of ``(channel_id, message)`` pairs."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[tuple[str, ProtocolMessage]] = asyncio.Queue(maxsize)

    async def put(self, channel_id: str, message: ProtocolMessage) -> None:
        await self._queue.put((channel_id, message))

    def put_nowait(self, channel_id: str, message: ProtocolMessage) -> None:
        self._queue.put_nowait((channel_id, message))

    async def get(self, timeout: float | None = None) -> tuple[str, ProtocolMessage] | None:
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def empty(self) -> bool:
        return self._queue.empty()


async def pump_connection(channel_id: str, connection: Connection, inbox: Inbox) -> None:
    """Forward every message read from ``connection`` into ``inbox`` until it closes."""
    while connection.is_connected():
        try:
            message = await connection.receive_message()
        except TransportError as e:
            logger.debug(f"Channel {channel_id} closed: {e}")
            break
        except ValueError as e:
            logger.warning(f"Dropping malformed message on {channel_id}: {e}")
            continue
        await inbox.put(channel_id, message)


__all__ = ["Channel", "QueueChannel", "ConnectionChannel", "Inbox", "pump_connection"]
