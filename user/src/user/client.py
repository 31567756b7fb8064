"""
TCP driver for a ParticipantAgent.

Every identity talks to the maker over its own connection so the maker
cannot link a NEW identity to the OLD one through the transport. All
connections feed one inbox; the agent's replies go out on the connection
of the identity that sends them, opened on first use. A maker that keeps
the connections open but stops answering is given up on at the agent's
phase deadline.
"""

from __future__ import annotations

import asyncio

from jscore.channels import Inbox, pump_connection
from jscore.network import TCPConnection, TransportError, connect_direct
from jscore.protocol import Outbound
from loguru import logger

from user.agent import ParticipantAgent, RecoveryPlan
from user.config import UserConfig


class SwapClient:
    def __init__(self, agent: ParticipantAgent, config: UserConfig):
        self.agent = agent
        self.config = config
        self.inbox = Inbox()
        self._connections: dict[str, TCPConnection] = {}
        self._pumps: list[asyncio.Task[None]] = []

    async def _connection_for(self, handle: str) -> TCPConnection:
        connection = self._connections.get(handle)
        if connection is not None and connection.is_connected():
            return connection

        connection = await connect_direct(
            self.config.maker_host,
            self.config.maker_port,
            self.config.max_message_size,
            self.config.connection_timeout,
        )
        self._connections[handle] = connection
        self._pumps.append(asyncio.create_task(pump_connection(handle, connection, self.inbox)))
        return connection

    async def send(self, outbound: list[Outbound]) -> None:
        for item in outbound:
            connection = await self._connection_for(item.message.sender)
            await connection.send_message(item.message)

    def _all_closed(self) -> bool:
        return bool(self._connections) and not any(
            c.is_connected() for c in self._connections.values()
        )

    async def run(self, registration: Outbound) -> RecoveryPlan:
        """
        Drive one swap to its end.

        Args:
            registration: The agent's register_input message

        Returns:
            How the user recovers its coins from the final state
        """
        try:
            await self.send([registration])
            while not self.agent.is_finished:
                item = await self.inbox.get(timeout=self.config.poll_interval)
                if item is not None:
                    _, message = item
                    await self.send(await self.agent.handle(message))
                await self.send(self.agent.expire_deadlines())
                if item is None and not self.agent.is_finished and self._all_closed():
                    logger.warning("Lost every connection to the maker")
                    break
        except TransportError as e:
            logger.error(f"Connection to maker failed: {e}")
        finally:
            await self.close()

        plan = self.agent.recovery_plan()
        logger.info(f"Swap ended in {self.agent.phase.value}: {plan.method.value}")
        return plan

    async def close(self) -> None:
        for connection in self._connections.values():
            await connection.close()
        for task in self._pumps:
            task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps.clear()


__all__ = ["SwapClient"]
