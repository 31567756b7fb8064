"""
TCP transport: newline-delimited protocol messages.
"""

import asyncio
from abc import ABC, abstractmethod

from loguru import logger

from jscore.protocol import ProtocolMessage

DEFAULT_MAX_MESSAGE_SIZE = 2097152  # 2MB


class TransportError(Exception):
    pass


class Connection(ABC):
    @abstractmethod
    async def send(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    async def send_message(self, message: ProtocolMessage) -> None:
        await self.send(message.to_bytes())

    async def receive_message(self) -> ProtocolMessage:
        data = await self.receive()
        try:
            return ProtocolMessage.from_bytes(data)
        except KeyError as e:
            raise ValueError(f"Message missing field {e}") from e


class TCPConnection(Connection):
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ):
        self.reader = reader
        self.writer = writer
        self.max_message_size = max_message_size
        self._connected = True
        self._send_lock = asyncio.Lock()

    @property
    def peer(self) -> str:
        peername = self.writer.get_extra_info("peername")
        if isinstance(peername, tuple) and len(peername) >= 2:
            return f"{peername[0]}:{peername[1]}"
        return "unknown"

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise TransportError("Connection closed")
        if len(data) > self.max_message_size:
            raise ValueError(f"Message too large: {len(data)} > {self.max_message_size}")

        async with self._send_lock:
            if not self._connected:
                raise TransportError("Connection closed")

            logger.trace(f"TCPConnection.send: sending {len(data) + 1} bytes")
            try:
                self.writer.write(data + b"\n")
                await self.writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                self._connected = False
                raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> bytes:
        if not self._connected:
            raise TransportError("Connection closed")

        try:
            data = await self.reader.readuntil(b"\n")
            stripped = data.rstrip(b"\r\n")
            logger.trace(f"TCPConnection.receive: received {len(stripped)} bytes")
            return stripped
        except asyncio.LimitOverrunError as e:
            logger.error(f"Message too large (>{self.max_message_size} bytes)")
            raise TransportError("Message too large") from e
        except asyncio.IncompleteReadError as e:
            self._connected = False
            logger.trace("TCPConnection.receive: connection closed by peer")
            raise TransportError("Connection closed by peer") from e

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass

    def is_connected(self) -> bool:
        return self._connected


async def connect_direct(
    host: str,
    port: int,
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    timeout: float = 30.0,
) -> TCPConnection:
    """Open a TCP connection to a maker."""
    try:
        logger.info(f"Connecting to {host}:{port}")
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, limit=max_message_size),
            timeout=timeout,
        )
        logger.info(f"Connected to {host}:{port}")
        return TCPConnection(reader, writer, max_message_size)
    except (OSError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to connect to {host}:{port}: {e}")
        raise TransportError(f"Connection to {host}:{port} failed: {e}") from e


__all__ = [
    "DEFAULT_MAX_MESSAGE_SIZE",
    "TransportError",
    "Connection",
    "TCPConnection",
    "connect_direct",
]
