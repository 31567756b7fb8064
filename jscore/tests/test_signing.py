"""
Tests for jscore.signing and the in-memory broadcaster.
"""

import secrets

import pytest
from coincurve import PrivateKey

from jscore.contracts import build_funding_contract, build_funding_transaction
from jscore.crypto import pubkey_hex
from jscore.errors import (
    InsufficientSignatures,
    InvalidSignature,
    TransactionFinalized,
    UnderfundedContract,
    ValidationError,
)
from jscore.memory import InMemoryBroadcaster, StaticMakerWallet
from jscore.models import PartialSignature, PathKind, UTXORef
from jscore.signing import EcdsaSignatureBackend


@pytest.fixture
def backend():
    return EcdsaSignatureBackend()


@pytest.fixture
def funding_tx():
    owners = [PrivateKey(), PrivateKey()]
    coins = [
        UTXORef(txid=secrets.token_hex(32), vout=0, amount=50_000, owner_pubkey=pubkey_hex(k))
        for k in owners
    ]
    contract = build_funding_contract([pubkey_hex(PrivateKey()) for _ in range(2)], 100_000)
    return build_funding_transaction(contract, coins), owners


def test_sign_verify_merge(backend, funding_tx):
    tx, owners = funding_tx
    txid = tx.txid

    for key in owners:
        sig = backend.partial_sign(tx, None, key)
        assert backend.verify(tx, sig)
        assert backend.merge(tx, sig)

    assert tx.is_finalized
    assert tx.txid == txid
    final = backend.combine(tx)
    assert final.txid == txid
    assert len(final.signatures) == 2


def test_merge_is_idempotent_and_commutative(backend, funding_tx):
    tx, owners = funding_tx
    other = tx.model_copy(deep=True)
    sigs = [backend.partial_sign(tx, None, key) for key in owners]

    for sig in sigs:
        backend.merge(tx, sig)
    for sig in reversed(sigs):
        backend.merge(other, sig)

    assert tx.signatures == other.signatures
    assert not tx.merge_signature(sigs[0])


def test_non_signer_cannot_sign(backend, funding_tx):
    tx, _ = funding_tx
    with pytest.raises(InvalidSignature):
        backend.partial_sign(tx, None, PrivateKey())


def test_forged_signature_rejected(backend, funding_tx):
    tx, owners = funding_tx
    sig = backend.partial_sign(tx, None, owners[0])
    forged = PartialSignature(signer=pubkey_hex(owners[1]), signature=sig.signature)
    assert not backend.verify(tx, forged)
    with pytest.raises(InvalidSignature):
        backend.merge(tx, forged)


def test_signature_for_wrong_path_rejected(backend, funding_tx):
    tx, owners = funding_tx
    tx.spend_path = PathKind.KEY
    sig = backend.partial_sign(tx, PathKind.HASH, owners[0])
    assert not backend.verify(tx, sig)


def test_signature_does_not_carry_over_to_other_transaction(backend, funding_tx):
    tx, owners = funding_tx
    sig = backend.partial_sign(tx, None, owners[0])
    changed = tx.model_copy(deep=True, update={"relative_timelock": 10})
    assert not backend.verify(changed, sig)


def test_finalized_transaction_rejects_new_signers(backend, funding_tx):
    tx, owners = funding_tx
    tx.required_signers = [pubkey_hex(owners[0])]
    backend.merge(tx, backend.partial_sign(tx, None, owners[0]))
    assert tx.is_finalized

    late = PartialSignature(signer=pubkey_hex(owners[1]), signature="00")
    with pytest.raises(TransactionFinalized):
        tx.merge_signature(late)


def test_combine_requires_all_signatures(backend, funding_tx):
    tx, owners = funding_tx
    backend.merge(tx, backend.partial_sign(tx, None, owners[0]))
    with pytest.raises(InsufficientSignatures) as exc_info:
        backend.combine(tx)
    assert exc_info.value.missing == [pubkey_hex(owners[1])]


def test_broadcaster_rejects_unsigned_and_double_spends(backend, funding_tx):
    tx, owners = funding_tx
    broadcaster = InMemoryBroadcaster(auto_confirm=0)

    with pytest.raises(InsufficientSignatures):
        broadcaster.submit(tx)

    for key in owners:
        backend.merge(tx, backend.partial_sign(tx, None, key))
    txid = broadcaster.submit(tx)
    assert broadcaster.submit(tx) == txid
    assert broadcaster.confirmations(txid) == 0
    assert broadcaster.confirm(txid, 2) == 2
    broadcaster.mine()
    assert broadcaster.confirmations(txid) == 3
    assert broadcaster.spender_of(tx.inputs[0].outpoint) == tx

    double = tx.model_copy(deep=True, update={"relative_timelock": 5})
    double.signatures.clear()
    for key in owners:
        backend.merge(double, backend.partial_sign(double, None, key))
    with pytest.raises(ValidationError):
        broadcaster.submit(double)


def test_static_wallet_selection():
    wallet = StaticMakerWallet()
    for _ in range(3):
        wallet.add_coin(100_000)
    assert wallet.balance == 300_000

    selected = wallet.select_utxos(150_000)
    assert sum(u.amount for u in selected) == 200_000
    assert wallet.balance == 100_000
    for coin in selected:
        assert coin.owner_pubkey is not None
        assert pubkey_hex(wallet.signing_key(coin.owner_pubkey)) == coin.owner_pubkey

    with pytest.raises(UnderfundedContract):
        wallet.select_utxos(200_000)
    with pytest.raises(ValidationError):
        wallet.signing_key(pubkey_hex(PrivateKey()))
