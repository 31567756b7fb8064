"""
Cryptographic primitives for JoinSwap.
"""

from __future__ import annotations

import binascii
import hashlib
import json
import secrets
from typing import Any

from coincurve import PrivateKey, PublicKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
HANDLE_HASH_LENGTH = 10
HANDLE_MAX_ENCODED = 14
HANDLE_PREFIX = "S"

SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


class CryptoError(Exception):
    pass


def base58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")

    result = ""
    while num > 0:
        num, remainder = divmod(num, 58)
        result = BASE58_ALPHABET[remainder] + result

    for byte in data:
        if byte == 0:
            result = BASE58_ALPHABET[0] + result
        else:
            break

    return result


def generate_identity_handle(version: int = 1) -> str:
    """
    Generate a fresh, throwaway identity handle.

    Hash of an ephemeral secp256k1 public key, base58 encoded and padded.
    Handles of one user are unrelated to each other.
    """
    privkey = secrets.token_bytes(32)
    private_key = ec.derive_private_key(int.from_bytes(privkey, "big"), ec.SECP256K1())
    public_key = private_key.public_key()
    pubkey_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.X962, format=serialization.PublicFormat.UncompressedPoint
    )

    pubkey_hex = binascii.hexlify(pubkey_bytes)
    handle_pkh_raw = hashlib.sha256(pubkey_hex).digest()[:HANDLE_HASH_LENGTH]
    handle_pkh = base58_encode(handle_pkh_raw)

    handle_pkh += "O" * (HANDLE_MAX_ENCODED - len(handle_pkh))

    return f"{HANDLE_PREFIX}{version}{handle_pkh}"


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def canonical_hash(data: Any) -> str:
    """SHA256 of the canonical JSON encoding, hex encoded."""
    return sha256(canonical_json(data)).hex()


def generate_preimage() -> tuple[str, str]:
    """Return a random 32-byte preimage and its SHA256 commitment, both hex."""
    preimage = secrets.token_bytes(32)
    return preimage.hex(), sha256(preimage).hex()


def hash_preimage(preimage_hex: str) -> str:
    return sha256(bytes.fromhex(preimage_hex)).hex()


def generate_keypair() -> tuple[PrivateKey, str]:
    """Fresh secp256k1 key and its compressed public key (hex)."""
    key = PrivateKey()
    return key, key.public_key.format(compressed=True).hex()


def load_private_key(key: PrivateKey | bytes | str) -> PrivateKey:
    if isinstance(key, PrivateKey):
        return key
    if isinstance(key, str):
        key = bytes.fromhex(key)
    if len(key) != 32:
        raise CryptoError(f"Private key must be 32 bytes, got {len(key)}")
    return PrivateKey(key)


def pubkey_hex(key: PrivateKey | bytes | str) -> str:
    return load_private_key(key).public_key.format(compressed=True).hex()


def is_valid_pubkey(value: str) -> bool:
    try:
        raw = bytes.fromhex(value)
        if len(raw) != 33:
            return False
        PublicKey(raw)
        return True
    except ValueError:
        return False


def private_key_matches(key_hex: str, expected_pubkey: str) -> bool:
    """Check that a released private key corresponds to the contract public key."""
    try:
        return pubkey_hex(key_hex) == expected_pubkey
    except (CryptoError, ValueError):
        return False


__all__ = [
    "CryptoError",
    "SECP256K1_N",
    "base58_encode",
    "generate_identity_handle",
    "sha256",
    "sha256d",
    "canonical_json",
    "canonical_hash",
    "generate_preimage",
    "hash_preimage",
    "generate_keypair",
    "load_private_key",
    "pubkey_hex",
    "is_valid_pubkey",
    "private_key_matches",
]
