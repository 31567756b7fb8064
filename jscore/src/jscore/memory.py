"""
In-memory collaborators for development, simulations and tests.
"""

from __future__ import annotations

import secrets

from coincurve import PrivateKey
from loguru import logger

from jscore.crypto import generate_keypair, pubkey_hex
from jscore.errors import InsufficientSignatures, UnderfundedContract, ValidationError
from jscore.models import Transaction, UTXORef


class InMemoryBroadcaster:
    """
    Mempool and chain stand-in.

    Rejects unfinalized transactions and double spends. Submitted
    transactions get ``auto_confirm`` confirmations immediately; tests can
    hold that at 0 and call ``confirm()`` to mine blocks by hand.
    """

    def __init__(self, auto_confirm: int = 1):
        self.auto_confirm = auto_confirm
        self.transactions: dict[str, Transaction] = {}
        self._confirmations: dict[str, int] = {}
        self._spent: dict[str, str] = {}

    def submit(self, tx: Transaction) -> str:
        if not tx.is_finalized:
            raise InsufficientSignatures(tx.missing_signers())

        txid = tx.txid
        if txid in self.transactions:
            return txid

        for utxo in tx.inputs:
            spender = self._spent.get(utxo.outpoint)
            if spender is not None:
                raise ValidationError(
                    f"{utxo.outpoint[:16]}... already spent by {spender[:16]}..."
                )

        for utxo in tx.inputs:
            self._spent[utxo.outpoint] = txid
        self.transactions[txid] = tx.model_copy(deep=True)
        self._confirmations[txid] = self.auto_confirm
        logger.debug(f"Broadcast {tx.kind.value} tx {txid[:16]}...")
        return txid

    def confirmations(self, txid: str) -> int:
        return self._confirmations.get(txid, 0)

    def confirm(self, txid: str, blocks: int = 1) -> int:
        if txid not in self.transactions:
            raise KeyError(txid)
        self._confirmations[txid] += blocks
        return self._confirmations[txid]

    def mine(self, blocks: int = 1) -> None:
        for txid in self.transactions:
            self._confirmations[txid] += blocks

    def spender_of(self, outpoint: str) -> Transaction | None:
        txid = self._spent.get(outpoint)
        return self.transactions.get(txid) if txid else None


class StaticMakerWallet:
    """Maker wallet over a fixed set of coins, spent first-fit."""

    def __init__(self) -> None:
        self._keys: dict[str, PrivateKey] = {}
        self._coins: list[UTXORef] = []

    def add_coin(self, amount: int, key: PrivateKey | None = None) -> UTXORef:
        key = key or PrivateKey()
        pubkey = pubkey_hex(key)
        self._keys[pubkey] = key
        coin = UTXORef(txid=secrets.token_hex(32), vout=0, amount=amount, owner_pubkey=pubkey)
        self._coins.append(coin)
        return coin

    @property
    def balance(self) -> int:
        return sum(c.amount for c in self._coins)

    def new_keypair(self) -> tuple[PrivateKey, str]:
        key, pubkey = generate_keypair()
        self._keys[pubkey] = key
        return key, pubkey

    def select_utxos(self, amount: int) -> list[UTXORef]:
        selected: list[UTXORef] = []
        total = 0
        for coin in list(self._coins):
            if total >= amount:
                break
            selected.append(coin)
            total += coin.amount
        if total < amount:
            raise UnderfundedContract(f"Maker wallet holds {self.balance} sats, need {amount} sats")
        for coin in selected:
            self._coins.remove(coin)
        return selected

    def signing_key(self, pubkey: str) -> PrivateKey:
        try:
            return self._keys[pubkey]
        except KeyError:
            raise ValidationError(f"No key for {pubkey[:16]}...") from None

    def change_pubkey(self) -> str:
        return self.new_keypair()[1]


__all__ = ["InMemoryBroadcaster", "StaticMakerWallet"]
