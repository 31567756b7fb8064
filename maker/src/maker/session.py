"""
Swap session state for the maker.

A SwapSession owns everything created for one batch of users: the funding
contract and its transactions, one distribution contract per registered
output, a registrar, a key exchange engine and its own timer set. The
coordinator is the only code that mutates it.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from coincurve import PrivateKey
from jscore.config import ProtocolConfig
from jscore.contracts import ContractArena
from jscore.errors import InvalidTransition
from jscore.exchange import KeyExchangeEngine
from jscore.models import (
    Contract,
    DegradedCompletion,
    DistributionState,
    IdentityGeneration,
    PhaseTransition,
    PrivateKeyShare,
    PRE_FUNDED_PHASES,
    SwapPhase,
    TERMINAL_PHASES,
    Transaction,
    UTXORef,
)
from jscore.protocol import RefundContractProposal
from jscore.registrar import IdentityRegistrar, InputCommitment, IssuanceNonce
from jscore.timeouts import Clock, TimeoutMonitor
from loguru import logger

POST_FUNDED_FALLBACK = SwapPhase.MAKER_OWNS_AFTER_CSV

ALLOWED_TRANSITIONS: dict[SwapPhase, frozenset[SwapPhase]] = {
    SwapPhase.COLLECTING_REGISTRATIONS: frozenset(
        {SwapPhase.BUILDING_FUNDING, SwapPhase.REFUNDED}
    ),
    SwapPhase.BUILDING_FUNDING: frozenset({SwapPhase.AWAITING_REFUND_SIGS, SwapPhase.REFUNDED}),
    SwapPhase.AWAITING_REFUND_SIGS: frozenset(
        {SwapPhase.AWAITING_FUNDING_SIGS, SwapPhase.REFUNDED}
    ),
    SwapPhase.AWAITING_FUNDING_SIGS: frozenset({SwapPhase.FUNDED, SwapPhase.REFUNDED}),
    SwapPhase.FUNDED: frozenset({SwapPhase.DISTRIBUTING, POST_FUNDED_FALLBACK}),
    SwapPhase.DISTRIBUTING: frozenset(
        {SwapPhase.AWAITING_HASHPATH_SECRETS, POST_FUNDED_FALLBACK}
    ),
    SwapPhase.AWAITING_HASHPATH_SECRETS: frozenset(
        {SwapPhase.AWAITING_USERKEY_SECRETS, POST_FUNDED_FALLBACK}
    ),
    SwapPhase.AWAITING_USERKEY_SECRETS: frozenset(
        {SwapPhase.AWAITING_MAKERKEY_SECRETS, SwapPhase.DEGRADED_COMPLETE, POST_FUNDED_FALLBACK}
    ),
    SwapPhase.AWAITING_MAKERKEY_SECRETS: frozenset(
        {SwapPhase.COMPLETE, SwapPhase.DEGRADED_COMPLETE, POST_FUNDED_FALLBACK}
    ),
    SwapPhase.COMPLETE: frozenset(),
    SwapPhase.REFUNDED: frozenset(),
    SwapPhase.MAKER_OWNS_AFTER_CSV: frozenset(),
    SwapPhase.DEGRADED_COMPLETE: frozenset(),
}


@dataclass
class Registration:
    """Input registration of one OLD identity."""

    handle: str
    key_pubkey: str
    hash_pubkey: str
    utxos: list[UTXORef]
    refund_pubkey: str
    output_amounts: list[int]
    nonces: dict[str, IssuanceNonce] = field(default_factory=dict)
    certified: bool = False

    @property
    def commitment(self) -> InputCommitment:
        return InputCommitment(utxos=tuple(self.utxos))

    @property
    def value(self) -> int:
        return sum(u.amount for u in self.utxos)


@dataclass
class OutputRegistration:
    """Output registration of one NEW identity."""

    handle: str
    key_pubkey: str
    hash_pubkey: str
    amount: int


@dataclass
class DistributionRecord:
    """One distribution contract and its independent sub-state."""

    handle: str
    contract: Contract
    transaction: Transaction
    maker_key: PrivateKey = field(repr=False)
    maker_refund_key: PrivateKey = field(repr=False)
    state: DistributionState = DistributionState.PENDING
    confirmations: int = 0

    @property
    def contract_id(self) -> str:
        return self.contract.contract_id

    @property
    def timer_tag(self) -> str:
        return f"distribution:{self.contract.contract_id}"


class SwapSession:
    def __init__(
        self,
        config: ProtocolConfig,
        clock: Clock,
        session_id: str | None = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.config = config
        self.clock = clock
        self.created_at = time.time()

        self.phase = SwapPhase.COLLECTING_REGISTRATIONS
        self.history: list[PhaseTransition] = []

        self.monitor = TimeoutMonitor(clock)
        self.registrar = IdentityRegistrar()
        self.exchange = KeyExchangeEngine(clock)
        self.arena = ContractArena()
        self.retries_left: dict[str, int] = {}

        self.registrations: dict[str, Registration] = {}
        self.outputs: dict[str, OutputRegistration] = {}
        self.distributions: dict[str, DistributionRecord] = {}

        self.maker_key: PrivateKey | None = None
        self.maker_hash_key: PrivateKey | None = None
        self.preimage: str | None = None
        self.hash_commitment: str | None = None

        self.funding_contract: Contract | None = None
        self.funding_tx: Transaction | None = None
        self.refund_tx: Transaction | None = None
        self.funding_txid: str | None = None
        self.proposal: RefundContractProposal | None = None

        self.hash_path_shares: dict[str, PrivateKeyShare] = {}
        self.key_path_shares: dict[str, PrivateKeyShare] = {}
        self.open_round_id: str | None = None

        self.degraded: DegradedCompletion | None = None
        self.failure: str | None = None

    # -- phase handling --

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_funded(self) -> bool:
        return self.phase not in PRE_FUNDED_PHASES and self.phase != SwapPhase.REFUNDED

    def can_transition(self, to_phase: SwapPhase) -> bool:
        return to_phase in ALLOWED_TRANSITIONS[self.phase]

    def transition(self, to_phase: SwapPhase, reason: str = "") -> PhaseTransition:
        if not self.can_transition(to_phase):
            raise InvalidTransition(
                f"Session {self.session_id[:8]}: {self.phase.value} -> {to_phase.value} not allowed"
            )
        record = PhaseTransition(from_phase=self.phase, to_phase=to_phase, reason=reason)
        self.history.append(record)
        logger.info(
            f"Session {self.session_id[:8]}: {self.phase.value} -> {to_phase.value}"
            f"{f' ({reason})' if reason else ''}"
        )
        self.phase = to_phase
        if self.is_terminal:
            self.monitor.cancel_all()
        return record

    def fallback_phase(self) -> SwapPhase:
        """Where a failure in the current phase leads."""
        if self.phase in PRE_FUNDED_PHASES:
            return SwapPhase.REFUNDED
        return POST_FUNDED_FALLBACK

    # -- timers --

    def arm(self, tag: str, seconds: float, retries: int | None = None) -> None:
        self.monitor.arm_in(seconds, tag)
        self.retries_left[tag] = self.config.message_retries if retries is None else retries

    def disarm(self, tag: str) -> None:
        self.monitor.cancel_tag(tag)
        self.retries_left.pop(tag, None)

    # -- participants --

    @property
    def certified_registrations(self) -> list[Registration]:
        return [r for r in self.registrations.values() if r.certified]

    @property
    def old_handles(self) -> list[str]:
        return sorted(r.handle for r in self.certified_registrations)

    @property
    def new_handles(self) -> list[str]:
        return sorted(self.outputs)

    @property
    def all_handles(self) -> list[str]:
        return sorted(set(self.registrations) | set(self.outputs))

    def generation_of(self, handle: str) -> IdentityGeneration | None:
        registration = self.registrations.get(handle)
        if registration is not None and registration.certified:
            return IdentityGeneration.OLD
        if handle in self.outputs:
            return IdentityGeneration.NEW
        return None

    def known_keys(self) -> set[str]:
        keys: set[str] = set()
        for r in self.registrations.values():
            keys.update({r.key_pubkey, r.hash_pubkey, r.refund_pubkey})
            keys.update(u.owner_pubkey for u in r.utxos if u.owner_pubkey)
        for o in self.outputs.values():
            keys.update({o.key_pubkey, o.hash_pubkey})
        return keys

    def known_outpoints(self) -> set[str]:
        return {u.outpoint for r in self.registrations.values() for u in r.utxos}

    # -- archive --

    def summary(self) -> dict[str, Any]:
        """Session summary with every secret left out."""
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "created_at": self.created_at,
            "participants": len(self.certified_registrations),
            "outputs": len(self.outputs),
            "funding_contract_id": (
                self.funding_contract.contract_id if self.funding_contract else None
            ),
            "funding_txid": self.funding_txid,
            "refund_txid": self.refund_tx.txid if self.refund_tx else None,
            "distributions": [
                {
                    "contract_id": d.contract_id,
                    "txid": d.transaction.txid,
                    "amount": d.contract.funding_amount,
                    "state": d.state.value,
                }
                for d in self.distributions.values()
            ],
            "transitions": [t.model_dump(mode="json") for t in self.history],
            "degraded": (
                self.degraded.model_dump(mode="json", exclude={"preimage"})
                if self.degraded
                else None
            ),
            "failure": self.failure,
        }

    def archive(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{self.session_id}.json"
        path.write_text(json.dumps(self.summary(), indent=2))
        logger.info(f"Archived session {self.session_id[:8]} to {path}")
        return path


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Registration",
    "OutputRegistration",
    "DistributionRecord",
    "SwapSession",
]
