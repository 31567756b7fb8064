"""
Identity registrar: blind certificates linking OLD and NEW identities.

Issuance runs in two halves so it can travel over the wire:

    registrar.open_issuance(commitment, amount)  -> IssuanceNonce   (certificate_nonce)
    requester.challenge(nonce)                   -> int             (certificate_request)
    registrar.sign_blinded(nonce_id, challenge)  -> int             (blind_certificate)
    requester.finalize(s)                        -> Certificate

The registrar only ever sees the nonce id, the input commitment and the
blinded challenge. The certificate serial and the unblinded signature are
first shown to it at redemption time, by a NEW identity, and cannot be
matched against any issuance transcript.
"""

from __future__ import annotations

import secrets
import threading
from collections import defaultdict
from collections.abc import Iterable

from coincurve import PrivateKey
from loguru import logger
from pydantic import BaseModel, Field

from jscore.blind import (
    BlindSignatureRequest,
    BlindSigner,
    certificate_message,
    tweak_private_key,
    tweak_public_key,
    verify_blind_signature,
)
from jscore.crypto import CryptoError, canonical_hash, pubkey_hex
from jscore.errors import CertificateInvalid, CertificateReused, RegistrarError
from jscore.models import Amount, Certificate, Identity, IdentityGeneration, UTXORef

DEFAULT_MAX_OPEN_NONCES = 64


class InputCommitment(BaseModel):
    """The set of inputs a registration commits to."""

    utxos: tuple[UTXORef, ...] = Field(..., min_length=1)

    model_config = {"frozen": True}

    @property
    def value(self) -> int:
        return sum(u.amount for u in self.utxos)

    @property
    def commitment_id(self) -> str:
        return canonical_hash(sorted(u.outpoint for u in self.utxos))


class IssuanceNonce(BaseModel):
    nonce_id: str
    nonce_point: str
    amount: Amount

    model_config = {"frozen": True}


class CertificateRequester:
    """User side of one certificate issuance."""

    def __init__(self, registrar_pubkey: str, amount: int, serial: bytes | None = None):
        if amount <= 0:
            raise RegistrarError(f"Certificate amount must be positive, got {amount}")
        self.registrar_pubkey = registrar_pubkey
        self.amount = amount
        self.serial = serial if serial is not None else secrets.token_bytes(32)
        self._request: BlindSignatureRequest | None = None
        self.nonce_id: str | None = None

    def challenge(self, nonce: IssuanceNonce) -> int:
        if nonce.amount != self.amount:
            raise RegistrarError(
                f"Nonce issued for {nonce.amount} sats, requested {self.amount} sats"
            )
        try:
            self._request = BlindSignatureRequest(
                tweak_public_key(self.registrar_pubkey, self.amount),
                nonce.nonce_point,
                certificate_message(self.serial, self.amount),
            )
        except (CryptoError, ValueError) as e:
            raise RegistrarError(f"Invalid issuance nonce: {e}") from e
        self.nonce_id = nonce.nonce_id
        return self._request.get_request()

    def finalize(self, s: int) -> Certificate:
        if self._request is None:
            raise RegistrarError("finalize() called before challenge()")
        try:
            nonce_point, s_prime = self._request.finalize(s, check=True)
        except CryptoError as e:
            raise CertificateInvalid(f"Registrar returned a bad blind signature: {e}") from e
        return Certificate(
            serial=self.serial.hex(),
            amount=self.amount,
            nonce_point=nonce_point.format(compressed=True).hex(),
            signature=s_prime.to_bytes(32, "big").hex(),
        )


class IdentityRegistrar:
    """
    Issues and redeems blind certificates for one swap session.

    The redemption set is mutated under a single lock so concurrent attempts
    to redeem the same certificate resolve to exactly one success. At most
    ``max_open_nonces`` issuances may wait for a challenge on each
    amount-tweaked key.
    """

    def __init__(
        self, key: PrivateKey | None = None, max_open_nonces: int = DEFAULT_MAX_OPEN_NONCES
    ):
        self._key = key or PrivateKey()
        self.master_pubkey = pubkey_hex(self._key)
        self.max_open_nonces = max_open_nonces
        self._lock = threading.Lock()
        self._pending: dict[str, BlindSigner] = {}
        self._pending_amounts: dict[str, int] = {}
        self._used_nonces: set[str] = set()
        self._issued_value: defaultdict[str, int] = defaultdict(int)
        self._issued = 0
        self._redeemed: dict[str, str] = {}

    @property
    def issued_count(self) -> int:
        return self._issued

    @property
    def redeemed_count(self) -> int:
        return len(self._redeemed)

    @property
    def outstanding(self) -> int:
        return self._issued - len(self._redeemed)

    def open_nonces(self, amount: int) -> int:
        """Issuances for ``amount`` still waiting for their challenge."""
        return sum(1 for a in self._pending_amounts.values() if a == amount)

    def open_issuance(self, commitment: InputCommitment, amount: int) -> IssuanceNonce:
        """
        Start issuing a certificate worth ``amount`` against ``commitment``.

        Raises:
            RegistrarError: amount out of range, too many issuances open for
                this amount, or the certificates requested against this
                commitment would exceed its value
        """
        if amount <= 0:
            raise RegistrarError(f"Certificate amount must be positive, got {amount}")
        try:
            signing_key = tweak_private_key(self._key, amount)
        except CryptoError as e:
            raise RegistrarError(str(e)) from e

        with self._lock:
            if self.open_nonces(amount) >= self.max_open_nonces:
                raise RegistrarError(
                    f"Too many open issuances for {amount} sats ({self.max_open_nonces} max)"
                )
            cid = commitment.commitment_id
            if self._issued_value[cid] + amount > commitment.value:
                raise RegistrarError(
                    f"Requested certificates exceed committed value of {commitment.value} sats"
                )
            self._issued_value[cid] += amount

            nonce_id = secrets.token_hex(16)
            signer = BlindSigner(signing_key)
            self._pending[nonce_id] = signer
            self._pending_amounts[nonce_id] = amount

        logger.debug(f"Opened certificate issuance {nonce_id[:8]}... for {amount} sats")
        return IssuanceNonce(
            nonce_id=nonce_id,
            nonce_point=signer.nonce_point.format(compressed=True).hex(),
            amount=amount,
        )

    def sign_blinded(self, nonce_id: str, challenge: int) -> int:
        with self._lock:
            if nonce_id in self._used_nonces:
                raise RegistrarError(f"Issuance nonce {nonce_id[:8]}... already used")
            signer = self._pending.pop(nonce_id, None)
            if signer is None:
                raise RegistrarError(f"Unknown issuance nonce {nonce_id[:8]}...")
            self._pending_amounts.pop(nonce_id, None)
            self._used_nonces.add(nonce_id)
            self._issued += 1

        try:
            return signer.sign(challenge)
        except CryptoError as e:
            raise RegistrarError(str(e)) from e

    def cancel_issuance(self, nonce_ids: Iterable[str], commitment: InputCommitment) -> int:
        """
        Drop issuances that were never signed and release their booked value.

        Returns:
            Number of issuances cancelled
        """
        cancelled = 0
        with self._lock:
            cid = commitment.commitment_id
            for nonce_id in nonce_ids:
                if self._pending.pop(nonce_id, None) is None:
                    continue
                self._issued_value[cid] -= self._pending_amounts.pop(nonce_id)
                cancelled += 1
            if self._issued_value[cid] <= 0:
                del self._issued_value[cid]
        if cancelled:
            logger.debug(f"Cancelled {cancelled} certificate issuance(s)")
        return cancelled

    def register(
        self,
        input_commitment: InputCommitment,
        requester: CertificateRequester | None = None,
    ) -> Certificate:
        """
        Run a complete issuance locally.

        Without a requester, one certificate worth the full committed value
        is issued.
        """
        if requester is None:
            requester = CertificateRequester(self.master_pubkey, input_commitment.value)
        nonce = self.open_issuance(input_commitment, requester.amount)
        challenge = requester.challenge(nonce)
        return requester.finalize(self.sign_blinded(nonce.nonce_id, challenge))

    def verify(self, certificate: Certificate) -> bool:
        try:
            return verify_blind_signature(
                tweak_public_key(self.master_pubkey, certificate.amount),
                certificate_message(bytes.fromhex(certificate.serial), certificate.amount),
                certificate.nonce_point,
                int(certificate.signature, 16),
            )
        except (ValueError, CryptoError):
            return False

    def redeem(self, certificate: Certificate, new_identity: Identity) -> None:
        """
        Redeem a certificate for a NEW identity.

        Raises:
            CertificateInvalid: the signature does not verify, or the identity
                is not a NEW identity
            CertificateReused: the serial was already redeemed
        """
        if new_identity.generation != IdentityGeneration.NEW:
            raise CertificateInvalid("Certificates can only be redeemed by NEW identities")
        if not self.verify(certificate):
            raise CertificateInvalid(f"Certificate {certificate.serial[:8]}... does not verify")

        with self._lock:
            if certificate.serial in self._redeemed:
                raise CertificateReused(f"Certificate {certificate.serial[:8]}... already redeemed")
            self._redeemed[certificate.serial] = new_identity.id

        new_identity.blinded_cert = certificate
        logger.debug(f"Redeemed certificate for {certificate.amount} sats")


__all__ = [
    "DEFAULT_MAX_OPEN_NONCES",
    "InputCommitment",
    "IssuanceNonce",
    "CertificateRequester",
    "IdentityRegistrar",
]
