"""
TCP front end of the maker.

Each accepted connection is pumped into the coordinator's inbox. A
connection is attached to every identity handle that sends through it, so
replies reach the handle on that connection. A handle stays bound to the
first live connection that used it; messages claiming it from any other
connection are dropped. Users open one connection per identity so OLD and
NEW handles never share one.
"""

from __future__ import annotations

import asyncio

from jscore.channels import ConnectionChannel, Inbox
from jscore.network import TCPConnection, TransportError
from loguru import logger

from maker.config import MakerConfig
from maker.coordinator import ProtocolCoordinator


class MakerServer:
    def __init__(self, coordinator: ProtocolCoordinator, config: MakerConfig):
        self.coordinator = coordinator
        self.config = config
        self.inbox = Inbox()
        self.running = False
        self._server: asyncio.Server | None = None
        self._connections: set[TCPConnection] = set()
        self._coordinator_task: asyncio.Task[None] | None = None

    @property
    def port(self) -> int:
        """Bound port, useful when configured with port 0."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            self.config.port,
            limit=self.config.max_message_size,
        )
        self.running = True
        self._coordinator_task = asyncio.create_task(self.coordinator.run(self.inbox))
        logger.info(f"Maker listening on {self.config.host}:{self.port}")

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = TCPConnection(reader, writer, self.config.max_message_size)
        peer = connection.peer
        logger.debug(f"Connection from {peer}")
        self._connections.add(connection)
        handles: set[str] = set()

        try:
            while self.running and connection.is_connected():
                try:
                    message = await connection.receive_message()
                except ValueError as e:
                    logger.warning(f"Dropping malformed message from {peer}: {e}")
                    continue

                if message.sender not in handles:
                    if self._bound_elsewhere(message.sender, connection):
                        logger.warning(
                            f"Dropping {message.type.value} from {peer}: "
                            f"{message.sender} is bound to another connection"
                        )
                        continue
                    handles.add(message.sender)
                    self.coordinator.attach(
                        message.sender, ConnectionChannel(message.sender, connection)
                    )
                await self.inbox.put(message.sender, message)
        except TransportError as e:
            logger.debug(f"Connection from {peer} closed: {e}")
        finally:
            for handle in handles:
                channel = self.coordinator.channels.get(handle)
                if isinstance(channel, ConnectionChannel) and channel.connection is connection:
                    self.coordinator.detach(handle)
            self._connections.discard(connection)
            await connection.close()

    def _bound_elsewhere(self, handle: str, connection: TCPConnection) -> bool:
        channel = self.coordinator.channels.get(handle)
        if channel is None:
            return False
        if isinstance(channel, ConnectionChannel):
            return channel.connection is not connection and channel.connection.is_connected()
        return True

    async def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping maker server...")
        self.running = False
        self.coordinator.stop()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

        for connection in list(self._connections):
            await connection.close()
        self._connections.clear()

        if self._coordinator_task is not None:
            self._coordinator_task.cancel()
            try:
                await self._coordinator_task
            except asyncio.CancelledError:
                pass
        logger.info("Maker server stopped")


__all__ = ["MakerServer"]
