"""
Swap harness shared by the maker tests.

SwapHarness wires one ProtocolCoordinator to a set of ParticipantAgents
without any network: outbound messages are queued and delivered in order,
time only moves when a test advances the ManualClock.
"""

from __future__ import annotations

import secrets
from collections import deque
from collections.abc import Callable

from coincurve import PrivateKey
from jscore.crypto import pubkey_hex
from jscore.memory import InMemoryBroadcaster, StaticMakerWallet
from jscore.models import UTXORef
from jscore.protocol import MAKER_HANDLE, MessageType, Outbound, ProtocolMessage
from jscore.timeouts import ManualClock
from user.agent import ParticipantAgent
from user.config import UserConfig

from maker.config import MakerConfig
from maker.coordinator import ProtocolCoordinator
from maker.session import SwapSession

BTC = 100_000_000

DropFilter = Callable[[Outbound], bool]


def make_coins(amounts: list[int]) -> tuple[list[PrivateKey], list[UTXORef]]:
    keys = [PrivateKey() for _ in amounts]
    utxos = [
        UTXORef(txid=secrets.token_hex(32), vout=0, amount=amount, owner_pubkey=pubkey_hex(key))
        for key, amount in zip(keys, amounts)
    ]
    return keys, utxos


class SwapHarness:
    def __init__(
        self,
        config: MakerConfig,
        clock: ManualClock,
        broadcaster: InMemoryBroadcaster,
        wallet: StaticMakerWallet,
    ):
        self.config = config
        self.clock = clock
        self.broadcaster = broadcaster
        self.wallet = wallet
        self.coordinator = ProtocolCoordinator(config, wallet, broadcaster, clock=clock)
        self.agents: list[ParticipantAgent] = []
        self.queue: deque[Outbound] = deque()
        self.delivered: list[Outbound] = []
        self.filters: list[DropFilter] = []

    def user_config(self, **overrides) -> UserConfig:
        protocol = self.config.model_dump(
            exclude={"host", "port", "data_dir", "archive_sessions", "tick_interval"}
        )
        protocol.update(overrides)
        return UserConfig(**protocol)

    def add_agent(
        self,
        coins: list[int],
        outputs: list[int] | None = None,
        config: UserConfig | None = None,
    ) -> ParticipantAgent:
        """Create an agent and queue its input registration."""
        keys, utxos = make_coins(coins)
        agent = ParticipantAgent(keys, config or self.user_config(), clock=self.clock)
        self.agents.append(agent)
        self.queue.append(agent.submit_registration(utxos, output_amounts=outputs))
        return agent

    async def join(
        self,
        coins: list[int],
        outputs: list[int] | None = None,
        config: UserConfig | None = None,
    ) -> ParticipantAgent:
        """Add an agent and run until the maker goes quiet."""
        agent = self.add_agent(coins, outputs, config)
        await self.pump()
        return agent

    def agent_for(self, handle: str) -> ParticipantAgent | None:
        for agent in self.agents:
            if agent.owns(handle):
                return agent
        return None

    def drop(self, predicate: DropFilter) -> None:
        self.filters.append(predicate)

    def mute(self, agent: ParticipantAgent, *types: MessageType) -> None:
        """Drop messages of the given types sent by any identity of ``agent``."""

        def predicate(outbound: Outbound) -> bool:
            message = outbound.message
            return agent.owns(message.sender) and (not types or message.type in types)

        self.drop(predicate)

    def inject(self, message: ProtocolMessage) -> None:
        self.queue.append(Outbound(MAKER_HANDLE, message))

    async def pump(self) -> None:
        while self.queue:
            outbound = self.queue.popleft()
            if any(predicate(outbound) for predicate in self.filters):
                continue
            self.delivered.append(outbound)

            recipient, message = outbound
            if recipient == MAKER_HANDLE:
                self.queue.extend(await self.coordinator.handle(message))
                continue
            agent = self.agent_for(recipient)
            if agent is not None:
                self.queue.extend(await agent.handle(message))

    async def advance(self, seconds: float) -> None:
        self.clock.advance(seconds)
        self.queue.extend(await self.coordinator.tick())
        await self.pump()

    @property
    def session(self) -> SwapSession:
        assert len(self.coordinator.sessions) == 1
        return next(iter(self.coordinator.sessions.values()))

    def sent_to(self, agent: ParticipantAgent, message_type: MessageType) -> list[ProtocolMessage]:
        return [
            o.message
            for o in self.delivered
            if o.recipient != MAKER_HANDLE
            and agent.owns(o.recipient)
            and o.message.type == message_type
        ]
