"""
Tests for jscore.crypto
"""

import pytest
from coincurve import PrivateKey

from jscore.crypto import (
    CryptoError,
    base58_encode,
    canonical_hash,
    generate_identity_handle,
    generate_keypair,
    generate_preimage,
    hash_preimage,
    is_valid_pubkey,
    load_private_key,
    private_key_matches,
    pubkey_hex,
)


def test_base58_encode():
    assert base58_encode(b"hello") == "Cn8eVZg"
    assert base58_encode(b"") == ""
    assert base58_encode(b"\x00") == "1"
    assert base58_encode(b"\x00\x00") == "11"


def test_identity_handles_are_fresh():
    handles = {generate_identity_handle() for _ in range(50)}
    assert len(handles) == 50
    for handle in handles:
        assert handle.startswith("S1")
        assert len(handle) == 16


def test_preimage_commitment():
    preimage, commitment = generate_preimage()
    assert len(preimage) == 64
    assert hash_preimage(preimage) == commitment

    other, _ = generate_preimage()
    assert hash_preimage(other) != commitment


def test_keypair_and_pubkey():
    key, pubkey = generate_keypair()
    assert pubkey == pubkey_hex(key)
    assert pubkey == pubkey_hex(key.secret)
    assert pubkey == pubkey_hex(key.secret.hex())
    assert is_valid_pubkey(pubkey)


def test_load_private_key_rejects_wrong_length():
    with pytest.raises(CryptoError):
        load_private_key(b"\x01" * 31)


@pytest.mark.parametrize(
    "value",
    [
        "",
        "zz" * 33,
        "02" + "00" * 31,
        "05" + "11" * 32,
    ],
)
def test_is_valid_pubkey_rejects_garbage(value):
    assert not is_valid_pubkey(value)


def test_private_key_matches():
    key = PrivateKey()
    other = PrivateKey()
    assert private_key_matches(key.secret.hex(), pubkey_hex(key))
    assert not private_key_matches(other.secret.hex(), pubkey_hex(key))
    assert not private_key_matches("not hex", pubkey_hex(key))


def test_canonical_hash_ignores_key_order():
    assert canonical_hash({"a": 1, "b": [1, 2]}) == canonical_hash({"b": [1, 2], "a": 1})
    assert canonical_hash({"a": 1}) != canonical_hash({"a": 2})
