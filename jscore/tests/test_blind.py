"""
Tests for jscore.blind
"""

import pytest
from coincurve import PrivateKey

from jscore.blind import (
    BlindSignatureRequest,
    BlindSigner,
    certificate_message,
    tweak_private_key,
    tweak_public_key,
    verify_blind_signature,
)
from jscore.crypto import SECP256K1_N, CryptoError


def _sign(key: PrivateKey, message: bytes):
    signer = BlindSigner(key)
    request = BlindSignatureRequest(key.public_key, signer.nonce_point, message)
    challenge = request.get_request()
    return signer, request, challenge, request.finalize(signer.sign(challenge))


def test_blind_signature_verifies():
    key = PrivateKey()
    _, _, _, (nonce_point, s) = _sign(key, b"message")
    assert verify_blind_signature(key.public_key, b"message", nonce_point, s)
    assert not verify_blind_signature(key.public_key, b"other message", nonce_point, s)
    assert not verify_blind_signature(PrivateKey().public_key, b"message", nonce_point, s)


def test_signer_never_sees_the_final_signature():
    key = PrivateKey()
    signer, request, challenge, (nonce_point, s) = _sign(key, b"message")

    # The nonce and challenge the signer handled differ from what gets verified
    assert nonce_point.format() != signer.nonce_point.format()
    assert challenge != s


def test_nonce_signs_only_once():
    key = PrivateKey()
    signer = BlindSigner(key)
    request = BlindSignatureRequest(key.public_key, signer.nonce_point, b"m")
    signer.sign(request.get_request())
    assert signer.used
    with pytest.raises(CryptoError):
        signer.sign(request.get_request())


@pytest.mark.parametrize("challenge", [0, SECP256K1_N, SECP256K1_N + 5])
def test_challenge_out_of_range(challenge):
    with pytest.raises(CryptoError):
        BlindSigner(PrivateKey()).sign(challenge)


def test_bad_response_fails_finalize():
    key = PrivateKey()
    signer = BlindSigner(key)
    request = BlindSignatureRequest(key.public_key, signer.nonce_point, b"m")
    s = signer.sign(request.get_request())
    with pytest.raises(CryptoError):
        request.finalize((s + 1) % SECP256K1_N)


def test_amount_tweak_binds_amount():
    key = PrivateKey()
    tweaked = tweak_private_key(key, 50_000)
    assert tweaked.public_key.format() == tweak_public_key(key.public_key, 50_000).format()
    assert tweak_public_key(key.public_key, 50_001).format() != tweaked.public_key.format()

    message = certificate_message(b"\x01" * 32, 50_000)
    _, _, _, (nonce_point, s) = _sign(tweaked, message)
    assert verify_blind_signature(tweak_public_key(key.public_key, 50_000), message, nonce_point, s)
    assert not verify_blind_signature(
        tweak_public_key(key.public_key, 60_000), message, nonce_point, s
    )


def test_verify_rejects_out_of_range_scalar():
    key = PrivateKey()
    assert not verify_blind_signature(key.public_key, b"m", key.public_key, 0)
    assert not verify_blind_signature(key.public_key, b"m", key.public_key, SECP256K1_N)


@pytest.mark.parametrize("amount", [-1, 2**64], ids=["negative", "above-64-bits"])
def test_amount_out_of_range_raises_crypto_error(amount):
    key = PrivateKey()
    with pytest.raises(CryptoError):
        tweak_private_key(key, amount)
    with pytest.raises(CryptoError):
        tweak_public_key(key.public_key, amount)
    with pytest.raises(CryptoError):
        certificate_message(b"\x01" * 32, amount)
