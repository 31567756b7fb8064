"""
Contract and transaction construction.

Every builder here is pure and deterministic: participants are sorted,
inputs are ordered by outpoint, and contract ids are content hashes. Maker
and users call the same functions with the same public parameters and must
obtain identical objects; that equality is what users check before signing
anything.

Contracts built here:

Funding (users -> maker), one per session:
    KeyPath  { all user key-path keys, maker key-path key }
    HashPath { all user hash keys, maker hash key, H }

Distribution (maker -> user), one per registered output:
    KeyPath   { user key, maker key }
    HashPath  { user hash key, H }
    RefundPath( maker refund key, CSV timelock )

The users' refund protection is a pre-signed REFUND transaction spending the
funding KeyPath with a relative timelock, signed by everyone before any
funding signature exists.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

from jscore.crypto import canonical_hash, is_valid_pubkey
from jscore.errors import ContractError, InvalidParticipantSet, UnderfundedContract
from jscore.models import (
    Contract,
    ContractOutput,
    HashPath,
    KeyPath,
    PathKind,
    PlainOutput,
    RefundPath,
    Transaction,
    TransactionKind,
    UTXORef,
)

MIN_SIGNERS = 2


def _normalize_participants(pubkeys: Iterable[str], minimum: int = MIN_SIGNERS) -> tuple[str, ...]:
    keys = list(pubkeys)
    if len(keys) < minimum:
        raise InvalidParticipantSet(f"Need at least {minimum} signers, got {len(keys)}")
    if len(set(keys)) != len(keys):
        raise InvalidParticipantSet("Duplicate public keys in participant set")
    for key in keys:
        if not is_valid_pubkey(key):
            raise InvalidParticipantSet(f"Invalid public key: {key[:16]}...")
    return tuple(sorted(keys))


def compute_contract_id(paths: Sequence[KeyPath | HashPath | RefundPath], amount: int) -> str:
    return canonical_hash(
        {"paths": [p.model_dump(mode="json") for p in paths], "amount": amount}
    )


def _make_contract(paths: list[KeyPath | HashPath | RefundPath], amount: int) -> Contract:
    if amount <= 0:
        raise ContractError(f"Contract amount must be positive, got {amount}")
    contract = Contract(
        contract_id=compute_contract_id(paths, amount),
        paths=tuple(paths),
        funding_amount=amount,
    )
    validate(contract)
    return contract


def build_funding_contract(
    pubkeys: Iterable[str],
    amount: int,
    hash_pubkeys: Iterable[str] | None = None,
    hash_commitment: str | None = None,
) -> Contract:
    """
    Build the shared users-to-maker contract.

    Args:
        pubkeys: Key-path keys of every user plus the maker
        amount: Total value locked (sum of all registered inputs)
        hash_pubkeys: Hash-path keys, one per key-path key. Defaults to ``pubkeys``.
        hash_commitment: SHA256 of the maker's preimage; omit for a key-path-only contract

    Raises:
        InvalidParticipantSet: fewer than 2 signers, duplicates or invalid keys
    """
    keys = _normalize_participants(pubkeys)
    paths: list[KeyPath | HashPath | RefundPath] = [KeyPath(participants=keys)]

    if hash_commitment is not None:
        hash_keys = _normalize_participants(hash_pubkeys if hash_pubkeys is not None else keys)
        if hash_pubkeys is not None:
            if len(hash_keys) != len(keys):
                raise InvalidParticipantSet("Hash path must have one key per participant")
            if set(hash_keys) & set(keys):
                raise InvalidParticipantSet("Hash path keys must differ from key path keys")
        paths.append(HashPath(participants=hash_keys, hash_commitment=hash_commitment))

    return _make_contract(paths, amount)


def build_distribution_contract(
    user_pubkey: str,
    maker_pubkey: str,
    hash_commitment: str,
    timelock: int,
    amount: int,
    maker_refund_pubkey: str | None = None,
    user_hash_pubkey: str | None = None,
) -> Contract:
    """Build one maker-to-user contract for a single registered output."""
    keys = _normalize_participants([user_pubkey, maker_pubkey])
    hash_key = user_hash_pubkey or user_pubkey
    refund_key = maker_refund_pubkey or maker_pubkey
    for key in (hash_key, refund_key):
        if not is_valid_pubkey(key):
            raise InvalidParticipantSet(f"Invalid public key: {key[:16]}...")

    paths: list[KeyPath | HashPath | RefundPath] = [
        KeyPath(participants=keys),
        HashPath(participants=(hash_key,), hash_commitment=hash_commitment),
        RefundPath(owner=refund_key, relative_timelock=timelock),
    ]
    return _make_contract(paths, amount)


def validate(contract: Contract) -> None:
    """
    Validate a contract.

    Raises:
        ContractError: path exclusivity violated, non-positive timelock or
            amount, empty or duplicated participants, or a contract id that
            does not match the contract's content
    """
    counts = {kind: 0 for kind in PathKind}
    for path in contract.paths:
        counts[PathKind(path.kind)] += 1

    if counts[PathKind.KEY] != 1:
        raise ContractError(f"Contract needs exactly one key path, has {counts[PathKind.KEY]}")
    if counts[PathKind.HASH] > 1:
        raise ContractError("Contract has more than one hash path")
    if counts[PathKind.REFUND] > 1:
        raise ContractError("Contract has more than one refund path")

    for path in contract.paths:
        if isinstance(path, (KeyPath, HashPath)):
            if not path.participants:
                raise ContractError(f"{path.kind} path has no participants")
            if len(set(path.participants)) != len(path.participants):
                raise ContractError(f"{path.kind} path has duplicate participants")
        if isinstance(path, RefundPath) and path.relative_timelock <= 0:
            raise ContractError(
                f"Refund timelock must be strictly positive, got {path.relative_timelock}"
            )

    if contract.funding_amount <= 0:
        raise ContractError(f"Contract amount must be positive, got {contract.funding_amount}")

    expected_id = compute_contract_id(contract.paths, contract.funding_amount)
    if contract.contract_id != expected_id:
        raise ContractError("Contract id does not match contract content")


# =============================================================================
# Transactions
# =============================================================================


def sort_utxos(utxos: Iterable[UTXORef]) -> list[UTXORef]:
    return sorted(utxos, key=lambda u: (u.txid, u.vout))


def build_funding_transaction(contract: Contract, utxos: Iterable[UTXORef]) -> Transaction:
    """Spend every registered user input into the funding contract."""
    inputs = sort_utxos(utxos)
    outpoints = {u.outpoint for u in inputs}
    if len(outpoints) != len(inputs):
        raise ContractError("Duplicate inputs in funding transaction")

    total = sum(u.amount for u in inputs)
    if total != contract.funding_amount:
        raise UnderfundedContract(
            f"Inputs total {total} sats but contract locks {contract.funding_amount} sats"
        )

    if any(u.owner_pubkey is None for u in inputs):
        raise ContractError("Funding inputs must all have an owner public key")

    return Transaction(
        kind=TransactionKind.FUNDING,
        inputs=inputs,
        outputs=[ContractOutput(contract_id=contract.contract_id, amount=total)],
        required_signers=sorted({u.owner_pubkey for u in inputs if u.owner_pubkey}),
    )


def contract_outpoint(tx: Transaction, contract: Contract) -> UTXORef:
    """The output of ``tx`` paying into ``contract``, as a spendable reference."""
    for vout, output in enumerate(tx.outputs):
        if isinstance(output, ContractOutput) and output.contract_id == contract.contract_id:
            return UTXORef(
                txid=tx.txid, vout=vout, amount=output.amount, contract_id=contract.contract_id
            )
    raise ContractError(f"Transaction {tx.txid[:16]}... does not pay into contract")


def build_refund_transaction(
    funding_tx: Transaction,
    contract: Contract,
    refunds: Sequence[tuple[str, int]],
    timelock: int,
    refund_fee: int = 0,
) -> Transaction:
    """
    Pre-signed refund of the funding contract back to every user.

    Args:
        funding_tx: Unsigned funding transaction
        contract: The funding contract
        refunds: (refund pubkey, contributed amount) per user
        timelock: Relative timelock (blocks) before the refund is valid
        refund_fee: Fixed fee split equally between refund outputs
    """
    if timelock <= 0:
        raise ContractError(f"Refund timelock must be strictly positive, got {timelock}")
    if not refunds:
        raise ContractError("Refund transaction needs at least one output")

    fee_share = refund_fee // len(refunds)
    outputs = []
    for refund_pubkey, contributed in sorted(refunds):
        value = contributed - fee_share
        if value <= 0:
            raise ContractError(f"Refund output of {contributed} sats cannot cover its fee share")
        outputs.append(PlainOutput(pubkey=refund_pubkey, amount=value))

    total = sum(o.amount for o in outputs)
    if total > contract.funding_amount:
        raise ContractError("Refund outputs exceed the funding contract amount")

    return Transaction(
        kind=TransactionKind.REFUND,
        inputs=[contract_outpoint(funding_tx, contract)],
        outputs=outputs,
        relative_timelock=timelock,
        spend_path=PathKind.KEY,
        required_signers=list(contract.key_path.participants),
    )


def build_distribution_transaction(
    contract: Contract,
    utxos: Iterable[UTXORef],
    change_pubkey: str | None = None,
) -> Transaction:
    """Fund one distribution contract from maker coins."""
    inputs = sort_utxos(utxos)
    total = sum(u.amount for u in inputs)
    if total < contract.funding_amount:
        raise UnderfundedContract(
            f"Maker inputs total {total} sats, contract needs {contract.funding_amount} sats"
        )

    outputs: list[ContractOutput | PlainOutput] = [
        ContractOutput(contract_id=contract.contract_id, amount=contract.funding_amount)
    ]
    change = total - contract.funding_amount
    if change > 0:
        if change_pubkey is None:
            raise ContractError(f"{change} sats of change but no change key given")
        outputs.append(PlainOutput(pubkey=change_pubkey, amount=change))

    return Transaction(
        kind=TransactionKind.DISTRIBUTION,
        inputs=inputs,
        outputs=outputs,
        required_signers=sorted({u.owner_pubkey for u in inputs if u.owner_pubkey}),
    )


def build_hash_spend_transaction(
    funding_tx: Transaction, contract: Contract, destination_pubkey: str
) -> Transaction:
    """Maker's spend of the funding contract through its HashPath."""
    hash_path = contract.hash_path
    if hash_path is None:
        raise ContractError("Contract has no hash path")
    outpoint = contract_outpoint(funding_tx, contract)
    return Transaction(
        kind=TransactionKind.HASH_SPEND,
        inputs=[outpoint],
        outputs=[PlainOutput(pubkey=destination_pubkey, amount=outpoint.amount)],
        spend_path=PathKind.HASH,
        required_signers=list(hash_path.participants),
    )


class ContractArena:
    """
    Contracts of one session, indexed by ``contract_id``.

    Transactions reference contracts by id only.
    """

    def __init__(self) -> None:
        self._contracts: dict[str, Contract] = {}

    def add(self, contract: Contract) -> str:
        validate(contract)
        existing = self._contracts.get(contract.contract_id)
        if existing is not None and existing != contract:
            raise ContractError(f"Different contract already stored under {contract.contract_id}")
        self._contracts[contract.contract_id] = contract
        return contract.contract_id

    def get(self, contract_id: str) -> Contract:
        try:
            return self._contracts[contract_id]
        except KeyError:
            raise ContractError(f"Unknown contract {contract_id[:16]}...") from None

    def for_output(self, tx: Transaction, vout: int = 0) -> Contract:
        output = tx.outputs[vout]
        if not isinstance(output, ContractOutput):
            raise ContractError(f"Output {vout} of {tx.txid[:16]}... is not a contract output")
        return self.get(output.contract_id)

    def __contains__(self, contract_id: object) -> bool:
        return contract_id in self._contracts

    def __iter__(self) -> Iterator[Contract]:
        return iter(self._contracts.values())

    def __len__(self) -> int:
        return len(self._contracts)


__all__ = [
    "MIN_SIGNERS",
    "compute_contract_id",
    "build_funding_contract",
    "build_distribution_contract",
    "validate",
    "sort_utxos",
    "build_funding_transaction",
    "contract_outpoint",
    "build_refund_transaction",
    "build_distribution_transaction",
    "build_hash_spend_transaction",
    "ContractArena",
]
