"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

from jscore.crypto import canonical_json, is_valid_pubkey, private_key_matches, sha256d
from jscore.errors import ContractError, InvalidSignature, TransactionFinalized

HEX64_PATTERN = r"^[0-9a-f]{64}$"

# 21 million BTC in satoshis
MAX_MONEY = 2_100_000_000_000_000

Amount = Annotated[int, Field(gt=0, le=MAX_MONEY)]


def _check_pubkey(value: str) -> str:
    if not is_valid_pubkey(value):
        raise ValueError(f"Invalid compressed public key: {value[:16]}...")
    return value


class IdentityGeneration(str, Enum):
    OLD = "old"
    NEW = "new"


class Certificate(BaseModel):
    """Unblinded registration certificate held by a participant."""

    serial: str = Field(..., pattern=HEX64_PATTERN)
    amount: Amount
    nonce_point: str
    signature: str = Field(..., pattern=HEX64_PATTERN)

    model_config = {"frozen": True}


class Identity(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    generation: IdentityGeneration
    blinded_cert: Certificate | None = None

    model_config = {"frozen": False}


class UTXORef(BaseModel):
    """Reference to a coin. Contract outputs carry ``contract_id`` instead of an owner."""

    txid: str = Field(..., pattern=HEX64_PATTERN)
    vout: int = Field(..., ge=0)
    amount: Amount
    owner_pubkey: str | None = None
    contract_id: str | None = None

    model_config = {"frozen": True}

    @field_validator("owner_pubkey")
    @classmethod
    def validate_owner(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_pubkey(v)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


# =============================================================================
# Contracts
# =============================================================================


class PathKind(str, Enum):
    KEY = "key"
    HASH = "hash"
    REFUND = "refund"


class KeyPath(BaseModel):
    kind: Literal["key"] = "key"
    participants: tuple[str, ...]

    model_config = {"frozen": True}


class HashPath(BaseModel):
    kind: Literal["hash"] = "hash"
    participants: tuple[str, ...]
    hash_commitment: str = Field(..., pattern=HEX64_PATTERN)

    model_config = {"frozen": True}


class RefundPath(BaseModel):
    kind: Literal["refund"] = "refund"
    owner: str
    relative_timelock: int

    model_config = {"frozen": True}


SpendPath = Annotated[KeyPath | HashPath | RefundPath, Field(discriminator="kind")]


class Contract(BaseModel):
    """
    Multi-path spending contract on a single output.

    Pure data. Construction and validation live in ``jscore.contracts``.
    """

    contract_id: str
    paths: tuple[SpendPath, ...]
    funding_amount: int

    model_config = {"frozen": True}

    def path(self, kind: PathKind) -> KeyPath | HashPath | RefundPath | None:
        for p in self.paths:
            if p.kind == kind.value:
                return p
        return None

    @property
    def key_path(self) -> KeyPath:
        path = self.path(PathKind.KEY)
        if not isinstance(path, KeyPath):
            raise ContractError(f"Contract {self.contract_id[:16]}... has no key path")
        return path

    @property
    def hash_path(self) -> HashPath | None:
        path = self.path(PathKind.HASH)
        return path if isinstance(path, HashPath) else None

    @property
    def refund_path(self) -> RefundPath | None:
        path = self.path(PathKind.REFUND)
        return path if isinstance(path, RefundPath) else None


class SpendableOutputDescriptor(BaseModel):
    contract_id: str
    descriptor: str


# =============================================================================
# Transactions
# =============================================================================


class TransactionKind(str, Enum):
    FUNDING = "funding"
    REFUND = "refund"
    DISTRIBUTION = "distribution"
    HASH_SPEND = "hash_spend"


class ContractOutput(BaseModel):
    kind: Literal["contract"] = "contract"
    contract_id: str
    amount: Amount

    model_config = {"frozen": True}


class PlainOutput(BaseModel):
    kind: Literal["plain"] = "plain"
    pubkey: str
    amount: Amount

    model_config = {"frozen": True}


TxOutput = Annotated[ContractOutput | PlainOutput, Field(discriminator="kind")]


class PartialSignature(BaseModel):
    signer: str
    signature: str
    path: PathKind | None = None

    model_config = {"frozen": True}


class FinalSignature(BaseModel):
    txid: str
    path: PathKind | None = None
    signatures: tuple[PartialSignature, ...]


class Transaction(BaseModel):
    """
    Transaction template plus its partial-signature bag.

    The txid covers everything except signatures and witness data, so
    merging signatures never changes it.
    """

    kind: TransactionKind
    inputs: list[UTXORef]
    outputs: list[TxOutput]
    relative_timelock: int = Field(default=0, ge=0)
    spend_path: PathKind | None = None
    required_signers: list[str]
    signatures: dict[str, PartialSignature] = Field(default_factory=dict)
    witness_data: dict[str, str] = Field(default_factory=dict)

    def unsigned_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "inputs": [u.model_dump(mode="json") for u in self.inputs],
            "outputs": [o.model_dump(mode="json") for o in self.outputs],
            "relative_timelock": self.relative_timelock,
            "spend_path": self.spend_path.value if self.spend_path else None,
            "required_signers": list(self.required_signers),
        }

    @property
    def txid(self) -> str:
        return sha256d(canonical_json(self.unsigned_payload()))[::-1].hex()

    @property
    def total_output(self) -> int:
        return sum(o.amount for o in self.outputs)

    @property
    def is_finalized(self) -> bool:
        return bool(self.required_signers) and all(
            s in self.signatures for s in self.required_signers
        )

    def missing_signers(self) -> list[str]:
        return [s for s in self.required_signers if s not in self.signatures]

    def same_template(self, other: Transaction) -> bool:
        return self.unsigned_payload() == other.unsigned_payload()

    def merge_signature(self, sig: PartialSignature) -> bool:
        """
        Merge a (verified) partial signature.

        Commutative and idempotent: a signer already present is a no-op.
        Returns True if the bag changed.
        """
        if self.is_finalized and sig.signer not in self.signatures:
            raise TransactionFinalized(f"Transaction {self.txid[:16]}... is already finalized")
        if sig.signer not in self.required_signers:
            raise InvalidSignature(f"{sig.signer[:16]}... is not a required signer")
        if sig.signer in self.signatures:
            return False
        self.signatures[sig.signer] = sig
        return True


# =============================================================================
# Secrets
# =============================================================================


class PrivateKeyShare(BaseModel):
    kind: Literal["key_share"] = "key_share"
    path: PathKind
    contract_id: str
    owner: str
    key: str = Field(..., repr=False, pattern=HEX64_PATTERN)

    model_config = {"frozen": True}

    def matches_owner(self) -> bool:
        return private_key_matches(self.key, self.owner)


class Preimage(BaseModel):
    kind: Literal["preimage"] = "preimage"
    hash_commitment: str = Field(..., pattern=HEX64_PATTERN)
    preimage: str = Field(..., repr=False, pattern=HEX64_PATTERN)

    model_config = {"frozen": True}


Secret = Annotated[PrivateKeyShare | Preimage, Field(discriminator="kind")]


# =============================================================================
# Swap state
# =============================================================================


class SwapPhase(str, Enum):
    COLLECTING_REGISTRATIONS = "collecting_registrations"
    BUILDING_FUNDING = "building_funding"
    AWAITING_REFUND_SIGS = "awaiting_refund_sigs"
    AWAITING_FUNDING_SIGS = "awaiting_funding_sigs"
    FUNDED = "funded"
    DISTRIBUTING = "distributing"
    AWAITING_HASHPATH_SECRETS = "awaiting_hashpath_secrets"
    AWAITING_USERKEY_SECRETS = "awaiting_userkey_secrets"
    AWAITING_MAKERKEY_SECRETS = "awaiting_makerkey_secrets"
    COMPLETE = "complete"
    REFUNDED = "refunded"
    MAKER_OWNS_AFTER_CSV = "maker_owns_after_csv"
    DEGRADED_COMPLETE = "degraded_complete"


TERMINAL_PHASES = frozenset(
    {
        SwapPhase.COMPLETE,
        SwapPhase.REFUNDED,
        SwapPhase.MAKER_OWNS_AFTER_CSV,
        SwapPhase.DEGRADED_COMPLETE,
    }
)

PRE_FUNDED_PHASES = frozenset(
    {
        SwapPhase.COLLECTING_REGISTRATIONS,
        SwapPhase.BUILDING_FUNDING,
        SwapPhase.AWAITING_REFUND_SIGS,
        SwapPhase.AWAITING_FUNDING_SIGS,
    }
)


class DistributionState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    MAKER_OWNS_AFTER_CSV = "maker_owns_after_csv"
    DEGRADED = "degraded"
    COMPLETE = "complete"


class PhaseTransition(BaseModel):
    from_phase: SwapPhase
    to_phase: SwapPhase
    reason: str = ""
    at: float = Field(default_factory=time.time)


class DegradedCompletion(BaseModel):
    """
    Valid but privacy-losing terminal outcome: the preimage was revealed
    through the funding contract's HashPath, linking every distribution
    contract of the session.
    """

    session_id: str
    reason: str
    triggered_in: SwapPhase
    hash_commitment: str
    preimage: str = Field(..., repr=False)
    hash_spend_txid: str | None = None
    affected_contracts: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)


__all__ = [
    "MAX_MONEY",
    "Amount",
    "IdentityGeneration",
    "Certificate",
    "Identity",
    "UTXORef",
    "PathKind",
    "KeyPath",
    "HashPath",
    "RefundPath",
    "SpendPath",
    "Contract",
    "SpendableOutputDescriptor",
    "TransactionKind",
    "ContractOutput",
    "PlainOutput",
    "TxOutput",
    "PartialSignature",
    "FinalSignature",
    "Transaction",
    "PrivateKeyShare",
    "Preimage",
    "Secret",
    "SwapPhase",
    "TERMINAL_PHASES",
    "PRE_FUNDED_PHASES",
    "DistributionState",
    "PhaseTransition",
    "DegradedCompletion",
]
