"""
Blind Schnorr signatures over secp256k1.

Signer (registrar), with key x and public key X = xG:
    nonce      k random, R = kG            -> sent to requester
    response   s = k + c*x                 <- c received from requester

Requester, with message m:
    R' = R + aG + bX                       (a, b random blinding factors)
    c' = H(R' || X || m)
    c  = c' + b                            -> sent to signer
    s' = s + a                             once s comes back

The pair (R', s') verifies as s'G == R' + c'X and is unlinkable to the
(R, c, s) transcript the signer saw.

Certificates are bound to an amount by signing with a tweaked key
x_amount = x + H(tag || amount), so the verifier learns the amount a
certificate is good for without learning who requested it.

Plain blind Schnorr is only unforgeable while few signing sessions are
open concurrently on one key: with a few hundred open nonces an attacker
can solve the ROS problem and forge one signature more than it was issued.
Callers must keep the number of open BlindSigners per tweaked key small
(see IdentityRegistrar.max_open_nonces).
"""

from __future__ import annotations

import hashlib
import secrets

from coincurve import PrivateKey, PublicKey

from jscore.crypto import SECP256K1_N, CryptoError

CHALLENGE_TAG = b"joinswap/challenge"
AMOUNT_TAG = b"joinswap/amount"
CERT_TAG = b"joinswap/cert"


def _int_to_bytes(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _hash_to_scalar(*parts: bytes) -> int:
    h = hashlib.sha256()
    for part in parts:
        h.update(part)
    return int.from_bytes(h.digest(), "big") % SECP256K1_N


def _random_scalar() -> int:
    return secrets.randbelow(SECP256K1_N - 1) + 1


def _point(value: PublicKey | bytes | str) -> PublicKey:
    if isinstance(value, PublicKey):
        return value
    if isinstance(value, str):
        value = bytes.fromhex(value)
    return PublicKey(value)


def _amount_bytes(amount: int) -> bytes:
    try:
        return amount.to_bytes(8, "big")
    except OverflowError as e:
        raise CryptoError(f"Amount out of range: {amount}") from e


def amount_tweak(amount: int) -> int:
    return _hash_to_scalar(AMOUNT_TAG, _amount_bytes(amount))


def tweak_private_key(key: PrivateKey, amount: int) -> PrivateKey:
    """Signing key for certificates worth ``amount`` satoshis."""
    return PrivateKey.from_int((key.to_int() + amount_tweak(amount)) % SECP256K1_N)


def tweak_public_key(pubkey: PublicKey | bytes | str, amount: int) -> PublicKey:
    """Verification key for certificates worth ``amount`` satoshis."""
    return _point(pubkey).add(_int_to_bytes(amount_tweak(amount)))


def certificate_message(serial: bytes, amount: int) -> bytes:
    return hashlib.sha256(CERT_TAG + serial + _amount_bytes(amount)).digest()


def challenge_hash(nonce_point: PublicKey, pubkey: PublicKey, message: bytes) -> int:
    return _hash_to_scalar(
        CHALLENGE_TAG,
        nonce_point.format(compressed=True),
        pubkey.format(compressed=True),
        message,
    )


class BlindSigner:
    """Signer half of one blind signature. Each nonce signs at most once."""

    def __init__(self, key: PrivateKey):
        self._key = key
        self._k = _random_scalar()
        self._used = False
        self.nonce_point = PublicKey.from_secret(_int_to_bytes(self._k))

    @property
    def used(self) -> bool:
        return self._used

    def sign(self, challenge: int) -> int:
        if self._used:
            raise CryptoError("Blind signing nonce already used")
        if not 0 < challenge < SECP256K1_N:
            raise CryptoError("Challenge out of range")
        self._used = True
        s = (self._k + challenge * self._key.to_int()) % SECP256K1_N
        self._k = 0
        return s


class BlindSignatureRequest:
    """
    Requester half of one blind signature.

    Usage:
        request = BlindSignatureRequest(pubkey, nonce_point, message)
        challenge = request.get_request()      # send to signer
        nonce_point, s = request.finalize(s)   # s from signer
    """

    def __init__(
        self,
        pubkey: PublicKey | bytes | str,
        nonce_point: PublicKey | bytes | str,
        message: bytes,
    ):
        self.pubkey = _point(pubkey)
        self.message = message
        self._a = _random_scalar()
        self._b = _random_scalar()

        try:
            self.blinded_nonce = PublicKey.combine_keys(
                [
                    _point(nonce_point),
                    PublicKey.from_secret(_int_to_bytes(self._a)),
                    self.pubkey.multiply(_int_to_bytes(self._b)),
                ]
            )
        except ValueError as e:
            raise CryptoError(f"Cannot blind nonce point: {e}") from e

        self._c_prime = challenge_hash(self.blinded_nonce, self.pubkey, message)
        self._challenge = (self._c_prime + self._b) % SECP256K1_N

    def get_request(self) -> int:
        return self._challenge

    def finalize(self, s: int, check: bool = True) -> tuple[PublicKey, int]:
        """Unblind the signer's response into a signature ``(R', s')``."""
        s_prime = (s + self._a) % SECP256K1_N
        if check and not verify_blind_signature(
            self.pubkey, self.message, self.blinded_nonce, s_prime
        ):
            raise CryptoError("Blind signature does not verify")
        return self.blinded_nonce, s_prime


def verify_blind_signature(
    pubkey: PublicKey | bytes | str,
    message: bytes,
    nonce_point: PublicKey | bytes | str,
    s: int,
) -> bool:
    if not 0 < s < SECP256K1_N:
        return False
    try:
        X = _point(pubkey)
        R = _point(nonce_point)
        c = challenge_hash(R, X, message)
        lhs = PublicKey.from_secret(_int_to_bytes(s))
        rhs = PublicKey.combine_keys([R, X.multiply(_int_to_bytes(c))])
    except ValueError:
        return False
    return lhs.format(compressed=True) == rhs.format(compressed=True)


__all__ = [
    "amount_tweak",
    "tweak_private_key",
    "tweak_public_key",
    "certificate_message",
    "challenge_hash",
    "BlindSigner",
    "BlindSignatureRequest",
    "verify_blind_signature",
]
