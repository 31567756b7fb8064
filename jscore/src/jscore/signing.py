"""
Default signature backend: ECDSA over secp256k1 via coincurve.

Each signer signs the transaction's unsigned payload digest. The partial
signatures of all required signers together form the final signature of
the spend path.
"""

from __future__ import annotations

from coincurve import PrivateKey, PublicKey

from jscore.crypto import canonical_json, load_private_key, pubkey_hex, sha256d
from jscore.errors import InsufficientSignatures, InvalidSignature
from jscore.models import FinalSignature, PartialSignature, PathKind, Transaction


def sighash(tx: Transaction) -> bytes:
    return sha256d(canonical_json(tx.unsigned_payload()))


class EcdsaSignatureBackend:
    def partial_sign(
        self, tx: Transaction, path: PathKind | None, key: PrivateKey | bytes | str
    ) -> PartialSignature:
        private_key = load_private_key(key)
        signer = pubkey_hex(private_key)
        if signer not in tx.required_signers:
            raise InvalidSignature(f"{signer[:16]}... is not a signer of {tx.kind.value} tx")
        signature = private_key.sign(sighash(tx), hasher=None)
        return PartialSignature(signer=signer, signature=signature.hex(), path=path)

    def verify(self, tx: Transaction, sig: PartialSignature) -> bool:
        if sig.signer not in tx.required_signers:
            return False
        if sig.path is not None and tx.spend_path is not None and sig.path != tx.spend_path:
            return False
        try:
            return PublicKey(bytes.fromhex(sig.signer)).verify(
                bytes.fromhex(sig.signature), sighash(tx), hasher=None
            )
        except ValueError:
            return False

    def merge(self, tx: Transaction, sig: PartialSignature) -> bool:
        """Verify and merge one partial signature. Returns True if the bag changed."""
        if not self.verify(tx, sig):
            raise InvalidSignature(f"Bad signature from {sig.signer[:16]}... on {tx.kind.value} tx")
        return tx.merge_signature(sig)

    def combine(self, tx: Transaction) -> FinalSignature:
        missing = tx.missing_signers()
        if missing:
            raise InsufficientSignatures(missing)
        return FinalSignature(
            txid=tx.txid,
            path=tx.spend_path,
            signatures=tuple(tx.signatures[s] for s in sorted(tx.required_signers)),
        )


__all__ = ["sighash", "EcdsaSignatureBackend"]
