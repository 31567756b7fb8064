"""
Interfaces of the collaborators the protocol consumes.

Broadcasting, script encoding, signing and maker liquidity are injected
into the coordinator and agents. ``jscore.memory``, ``jscore.descriptors``
and ``jscore.signing`` provide the default implementations.
"""

from __future__ import annotations

from typing import Protocol

from coincurve import PrivateKey

from jscore.models import (
    Contract,
    FinalSignature,
    PartialSignature,
    PathKind,
    SpendableOutputDescriptor,
    Transaction,
    UTXORef,
)


class Broadcaster(Protocol):
    def submit(self, tx: Transaction) -> str: ...

    def confirmations(self, txid: str) -> int: ...


class ScriptEngine(Protocol):
    def encode(self, contract: Contract) -> SpendableOutputDescriptor: ...


class SignatureBackend(Protocol):
    def partial_sign(
        self, tx: Transaction, path: PathKind | None, key: PrivateKey | bytes | str
    ) -> PartialSignature: ...

    def verify(self, tx: Transaction, sig: PartialSignature) -> bool: ...

    def merge(self, tx: Transaction, sig: PartialSignature) -> bool: ...

    def combine(self, tx: Transaction) -> FinalSignature: ...


class MakerWallet(Protocol):
    """Liquidity and key material for distribution contracts."""

    def new_keypair(self) -> tuple[PrivateKey, str]: ...

    def select_utxos(self, amount: int) -> list[UTXORef]: ...

    def signing_key(self, pubkey: str) -> PrivateKey: ...

    def change_pubkey(self) -> str: ...


__all__ = ["Broadcaster", "ScriptEngine", "SignatureBackend", "MakerWallet"]
