"""
Key exchange engine: sequenced, all-or-nothing release of secrets.

A round is opened with the full mapping of holder -> expected secret. The
mapping is fixed at open time. Submissions are buffered and nothing leaves
the engine for a simultaneous round until every expected holder has
submitted a matching secret under the required identity generation. A round
that misses its deadline is discarded with every buffered secret.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from jscore.crypto import hash_preimage
from jscore.errors import (
    ExchangeError,
    ExchangeTimeout,
    IdentityGenerationMismatch,
    RoundIncomplete,
    UnexpectedSecret,
)
from jscore.models import IdentityGeneration, PathKind, Preimage, PrivateKeyShare
from jscore.timeouts import Clock, MonotonicClock

SecretValue = PrivateKeyShare | Preimage


class RoundStatus(str, Enum):
    OPEN = "open"
    RELEASED = "released"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class ExpectedSecret:
    """What one holder must release in a round."""

    kind: str
    contract_id: str | None = None
    path: PathKind | None = None
    owner: str | None = None
    hash_commitment: str | None = None

    @classmethod
    def key_share(cls, contract_id: str, path: PathKind, owner: str) -> ExpectedSecret:
        return cls(kind="key_share", contract_id=contract_id, path=path, owner=owner)

    @classmethod
    def preimage(cls, hash_commitment: str) -> ExpectedSecret:
        return cls(kind="preimage", hash_commitment=hash_commitment)

    def matches(self, secret: SecretValue) -> bool:
        if isinstance(secret, PrivateKeyShare):
            return (
                self.kind == "key_share"
                and secret.contract_id == self.contract_id
                and secret.path == self.path
                and secret.owner == self.owner
                and secret.matches_owner()
            )
        return (
            self.kind == "preimage"
            and secret.hash_commitment == self.hash_commitment
            and hash_preimage(secret.preimage) == self.hash_commitment
        )


@dataclass(frozen=True)
class ReleaseCondition:
    round_id: str
    generation: IdentityGeneration | None = None


@dataclass
class PendingRelease:
    round_id: str
    holder: str
    generation: IdentityGeneration | None
    secret: SecretValue = field(repr=False)
    submitted_at: float = 0.0


@dataclass
class ExchangeRound:
    round_id: str
    expected: dict[str, ExpectedSecret]
    must_use: IdentityGeneration | None
    simultaneous: bool
    deadline: float | None
    status: RoundStatus = RoundStatus.OPEN
    submissions: dict[str, PendingRelease] = field(default_factory=dict, repr=False)
    released: dict[str, SecretValue] = field(default_factory=dict, repr=False)

    def missing(self) -> list[str]:
        return sorted(h for h in self.expected if h not in self.submissions)

    def is_complete(self) -> bool:
        return not self.missing()


class KeyExchangeEngine:
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or MonotonicClock()
        self._rounds: dict[str, ExchangeRound] = {}

    def open_round(
        self,
        round_id: str,
        expected: Mapping[str, ExpectedSecret],
        must_use: IdentityGeneration | None = None,
        simultaneous: bool = True,
        deadline: float | None = None,
    ) -> ExchangeRound:
        if round_id in self._rounds and self._rounds[round_id].status == RoundStatus.OPEN:
            raise ExchangeError(f"Round '{round_id}' is already open")
        if not expected:
            raise ExchangeError(f"Round '{round_id}' has no expected holders")

        exchange_round = ExchangeRound(
            round_id=round_id,
            expected=dict(expected),
            must_use=must_use,
            simultaneous=simultaneous,
            deadline=deadline,
        )
        self._rounds[round_id] = exchange_round
        logger.debug(
            f"Opened exchange round '{round_id}' with {len(expected)} holder(s)"
            f"{f', must use {must_use.value}' if must_use else ''}"
        )
        return exchange_round

    def get_round(self, round_id: str) -> ExchangeRound:
        try:
            return self._rounds[round_id]
        except KeyError:
            raise ExchangeError(f"Unknown exchange round '{round_id}'") from None

    def _expired(self, exchange_round: ExchangeRound) -> bool:
        return exchange_round.deadline is not None and self.clock.now() >= exchange_round.deadline

    def schedule_release(
        self, secret: SecretValue, holder: str, release_condition: ReleaseCondition
    ) -> PendingRelease:
        """
        Buffer a secret for release.

        Raises:
            ExchangeTimeout: the round deadline already passed
            IdentityGenerationMismatch: submitted under the wrong identity generation
            UnexpectedSecret: unknown holder, or a secret that does not match
                what the holder is expected to release
        """
        exchange_round = self.get_round(release_condition.round_id)
        if exchange_round.status == RoundStatus.DISCARDED:
            raise ExchangeTimeout(exchange_round.round_id)
        if exchange_round.status == RoundStatus.RELEASED:
            raise ExchangeError(f"Round '{exchange_round.round_id}' was already released")
        if self._expired(exchange_round):
            self.discard(exchange_round.round_id)
            raise ExchangeTimeout(exchange_round.round_id)

        if (
            exchange_round.must_use is not None
            and release_condition.generation != exchange_round.must_use
        ):
            gen = release_condition.generation.value if release_condition.generation else "none"
            raise IdentityGenerationMismatch(
                f"Round '{exchange_round.round_id}' requires {exchange_round.must_use.value} "
                f"identities, got {gen}"
            )

        expected = exchange_round.expected.get(holder)
        if expected is None:
            raise UnexpectedSecret(
                f"{holder} has nothing to release in '{exchange_round.round_id}'"
            )
        if not expected.matches(secret):
            raise UnexpectedSecret(f"Secret from {holder} does not match its commitment")

        existing = exchange_round.submissions.get(holder)
        if existing is not None:
            if existing.secret != secret:
                raise UnexpectedSecret(f"{holder} already submitted a different secret")
            return existing

        pending = PendingRelease(
            round_id=exchange_round.round_id,
            holder=holder,
            generation=release_condition.generation,
            secret=secret,
            submitted_at=self.clock.now(),
        )
        exchange_round.submissions[holder] = pending
        logger.debug(
            f"Round '{exchange_round.round_id}': {len(exchange_round.submissions)}/"
            f"{len(exchange_round.expected)} submitted"
        )
        return pending

    def release_all(self, round_id: str) -> dict[str, SecretValue]:
        """
        Release the round's batch.

        For simultaneous rounds the whole batch is returned at once, and only
        when every expected holder submitted. Before the deadline an
        incomplete round raises ``RoundIncomplete`` and reveals nothing;
        after it the batch is discarded and ``ExchangeTimeout`` is raised.
        """
        exchange_round = self.get_round(round_id)
        if exchange_round.status == RoundStatus.RELEASED:
            return dict(exchange_round.released)
        if exchange_round.status == RoundStatus.DISCARDED:
            raise ExchangeTimeout(round_id)

        valid = {
            holder: pending.secret
            for holder, pending in exchange_round.submissions.items()
            if exchange_round.must_use is None or pending.generation == exchange_round.must_use
        }

        if not exchange_round.simultaneous:
            if len(valid) == len(exchange_round.expected):
                self._mark_released(exchange_round, valid)
            return valid

        if len(valid) == len(exchange_round.expected):
            self._mark_released(exchange_round, valid)
            return dict(valid)

        if self._expired(exchange_round):
            self.discard(round_id)
            raise ExchangeTimeout(round_id)
        missing = sorted(h for h in exchange_round.expected if h not in valid)
        raise RoundIncomplete(round_id, missing)

    def _mark_released(self, exchange_round: ExchangeRound, batch: dict[str, SecretValue]) -> None:
        exchange_round.released = dict(batch)
        exchange_round.status = RoundStatus.RELEASED
        exchange_round.submissions.clear()
        logger.info(f"Round '{exchange_round.round_id}' released {len(batch)} secret(s)")

    def discard(self, round_id: str) -> None:
        exchange_round = self.get_round(round_id)
        if exchange_round.status != RoundStatus.OPEN:
            return
        dropped = len(exchange_round.submissions)
        exchange_round.submissions.clear()
        exchange_round.status = RoundStatus.DISCARDED
        logger.warning(f"Round '{round_id}' discarded with {dropped} unreleased secret(s)")

    def missing(self, round_id: str) -> list[str]:
        return self.get_round(round_id).missing()

    def status(self, round_id: str) -> RoundStatus:
        return self.get_round(round_id).status


__all__ = [
    "RoundStatus",
    "ExpectedSecret",
    "ReleaseCondition",
    "PendingRelease",
    "ExchangeRound",
    "KeyExchangeEngine",
]
