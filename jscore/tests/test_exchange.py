"""
Tests for jscore.exchange
"""

import pytest
from coincurve import PrivateKey

from jscore.crypto import generate_preimage, pubkey_hex
from jscore.errors import (
    ExchangeError,
    ExchangeTimeout,
    IdentityGenerationMismatch,
    RoundIncomplete,
    UnexpectedSecret,
)
from jscore.exchange import ExpectedSecret, KeyExchangeEngine, ReleaseCondition, RoundStatus
from jscore.models import IdentityGeneration, PathKind, Preimage, PrivateKeyShare
from jscore.timeouts import ManualClock

CONTRACT_ID = "c" * 64
OLD = ReleaseCondition("hashpath", IdentityGeneration.OLD)


def _share(key: PrivateKey, contract_id: str = CONTRACT_ID) -> PrivateKeyShare:
    return PrivateKeyShare(
        path=PathKind.HASH, contract_id=contract_id, owner=pubkey_hex(key), key=key.secret.hex()
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def holders():
    return {f"S1holder{i}": PrivateKey() for i in range(3)}


@pytest.fixture
def engine(clock, holders):
    engine = KeyExchangeEngine(clock)
    engine.open_round(
        "hashpath",
        {
            h: ExpectedSecret.key_share(CONTRACT_ID, PathKind.HASH, pubkey_hex(k))
            for h, k in holders.items()
        },
        must_use=IdentityGeneration.OLD,
        deadline=60.0,
    )
    return engine


def test_round_releases_only_when_complete(engine, holders):
    items = list(holders.items())
    for holder, key in items[:-1]:
        engine.schedule_release(_share(key), holder, OLD)

    # k < N: nothing is revealed
    with pytest.raises(RoundIncomplete) as exc_info:
        engine.release_all("hashpath")
    assert exc_info.value.missing == [items[-1][0]]

    holder, key = items[-1]
    engine.schedule_release(_share(key), holder, OLD)
    released = engine.release_all("hashpath")
    assert set(released) == set(holders)
    assert engine.status("hashpath") == RoundStatus.RELEASED
    assert engine.release_all("hashpath") == released


def test_timeout_discards_buffered_secrets(engine, holders, clock):
    holder, key = next(iter(holders.items()))
    engine.schedule_release(_share(key), holder, OLD)

    clock.advance(61)
    with pytest.raises(ExchangeTimeout):
        engine.release_all("hashpath")
    assert engine.status("hashpath") == RoundStatus.DISCARDED
    assert engine.get_round("hashpath").submissions == {}

    with pytest.raises(ExchangeTimeout):
        engine.schedule_release(_share(key), holder, OLD)


def test_late_submission_after_deadline(engine, holders, clock):
    holder, key = next(iter(holders.items()))
    clock.advance(60)
    with pytest.raises(ExchangeTimeout):
        engine.schedule_release(_share(key), holder, OLD)


def test_wrong_generation_rejected(engine, holders):
    holder, key = next(iter(holders.items()))
    with pytest.raises(IdentityGenerationMismatch):
        engine.schedule_release(
            _share(key), holder, ReleaseCondition("hashpath", IdentityGeneration.NEW)
        )
    with pytest.raises(IdentityGenerationMismatch):
        engine.schedule_release(_share(key), holder, ReleaseCondition("hashpath"))
    assert engine.missing("hashpath") == sorted(holders)


def test_unexpected_secrets_rejected(engine, holders):
    holder, key = next(iter(holders.items()))

    with pytest.raises(UnexpectedSecret):
        engine.schedule_release(_share(key), "S1stranger", OLD)
    with pytest.raises(UnexpectedSecret):
        engine.schedule_release(_share(PrivateKey()), holder, OLD)
    with pytest.raises(UnexpectedSecret):
        engine.schedule_release(_share(key, contract_id="d" * 64), holder, OLD)

    forged = PrivateKeyShare(
        path=PathKind.HASH,
        contract_id=CONTRACT_ID,
        owner=pubkey_hex(key),
        key=PrivateKey().secret.hex(),
    )
    with pytest.raises(UnexpectedSecret):
        engine.schedule_release(forged, holder, OLD)


def test_resubmission(engine, holders):
    holder, key = next(iter(holders.items()))
    first = engine.schedule_release(_share(key), holder, OLD)
    assert engine.schedule_release(_share(key), holder, OLD) is first


def test_round_lifecycle_errors(engine):
    with pytest.raises(ExchangeError):
        engine.open_round("hashpath", {"S1x": ExpectedSecret.preimage("a" * 64)})
    with pytest.raises(ExchangeError):
        engine.open_round("empty", {})
    with pytest.raises(ExchangeError):
        engine.get_round("unknown")

    engine.discard("hashpath")
    engine.discard("hashpath")
    assert engine.status("hashpath") == RoundStatus.DISCARDED


def test_preimage_round(clock):
    preimage, commitment = generate_preimage()
    engine = KeyExchangeEngine(clock)
    engine.open_round("reveal", {"maker": ExpectedSecret.preimage(commitment)})

    wrong, _ = generate_preimage()
    with pytest.raises(UnexpectedSecret):
        engine.schedule_release(
            Preimage(hash_commitment=commitment, preimage=wrong),
            "maker",
            ReleaseCondition("reveal"),
        )

    secret = Preimage(hash_commitment=commitment, preimage=preimage)
    engine.schedule_release(secret, "maker", ReleaseCondition("reveal"))
    assert engine.release_all("reveal") == {"maker": secret}


def test_sequential_round_returns_partial_batch(clock, holders):
    engine = KeyExchangeEngine(clock)
    engine.open_round(
        "seq",
        {
            h: ExpectedSecret.key_share(CONTRACT_ID, PathKind.HASH, pubkey_hex(k))
            for h, k in holders.items()
        },
        simultaneous=False,
    )
    holder, key = next(iter(holders.items()))
    engine.schedule_release(_share(key), holder, ReleaseCondition("seq"))
    assert set(engine.release_all("seq")) == {holder}
    assert engine.status("seq") == RoundStatus.OPEN
