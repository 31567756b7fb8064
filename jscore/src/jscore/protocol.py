"""
JoinSwap protocol messages and serialization.

Messages travel as one JSON object per line:

    {"type": "register_input", "sender": "S1...", "session_id": "...", "data": {...}}

``data`` is the JSON form of the payload model registered for the type.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, NamedTuple, TypeVar

from pydantic import BaseModel, Field

from jscore.models import (
    Amount,
    Certificate,
    Contract,
    IdentityGeneration,
    PartialSignature,
    Preimage,
    Secret,
    SwapPhase,
    Transaction,
    UTXORef,
)
from jscore.registrar import IssuanceNonce

JOINSWAP_PROTOCOL_VERSION = 1
MAKER_HANDLE = "maker"

# Secret exchange rounds, in protocol order
HASHPATH_ROUND = "hashpath"
USERKEY_ROUND = "userkey"
MAKERKEY_ROUND = "makerkey"

P = TypeVar("P", bound=BaseModel)


class MessageType(str, Enum):
    REGISTER_INPUT = "register_input"
    CERTIFICATE_NONCE = "certificate_nonce"
    CERTIFICATE_REQUEST = "certificate_request"
    BLIND_CERTIFICATE = "blind_certificate"
    REFUND_CONTRACT_PROPOSAL = "refund_contract_proposal"
    REFUND_SIGNATURE = "refund_signature"
    FINALIZED_TRANSACTION = "finalized_transaction"
    FUNDING_SIGNATURE = "funding_signature"
    REGISTER_OUTPUT = "register_output"
    DISTRIBUTION_CONTRACT = "distribution_contract"
    DISTRIBUTION_CONFIRMED = "distribution_confirmed"
    SECRET_REQUEST = "secret_request"
    RELEASE_SECRET = "release_secret"
    PREIMAGE_REVEALED = "preimage_revealed"
    SESSION_UPDATE = "session_update"
    ERROR = "error"


# =============================================================================
# Payloads
# =============================================================================


class RegisterInput(BaseModel):
    key_pubkey: str
    hash_pubkey: str
    utxos: list[UTXORef] = Field(..., min_length=1)
    refund_pubkey: str
    output_amounts: list[Amount] = Field(..., min_length=1)
    protocol_version: int = JOINSWAP_PROTOCOL_VERSION


class CertificateNonce(BaseModel):
    """One issuance nonce per requested output amount."""

    registrar_pubkey: str
    nonces: list[IssuanceNonce] = Field(..., min_length=1)


class BlindRequest(BaseModel):
    nonce_id: str
    challenge: str


class CertificateRequest(BaseModel):
    """Blinded challenges for every nonce of a registration, signed all or none."""

    requests: list[BlindRequest] = Field(..., min_length=1)


class BlindResponse(BaseModel):
    nonce_id: str
    signature: str


class BlindCertificate(BaseModel):
    signatures: list[BlindResponse] = Field(..., min_length=1)


class RefundEntry(BaseModel):
    pubkey: str
    amount: int


class RefundContractProposal(BaseModel):
    contract: Contract
    funding_tx: Transaction
    refund_tx: Transaction
    participant_keys: list[str]
    hash_pubkeys: list[str]
    hash_commitment: str
    refunds: list[RefundEntry]
    refund_timelock: int
    refund_fee: int


class RefundSignature(BaseModel):
    signature: PartialSignature


class FinalizedTransaction(BaseModel):
    transaction: Transaction


class FundingSignature(BaseModel):
    signatures: list[PartialSignature] = Field(..., min_length=1)


class RegisterOutput(BaseModel):
    key_pubkey: str
    hash_pubkey: str
    certificate: Certificate


class DistributionContract(BaseModel):
    contract: Contract
    transaction: Transaction
    descriptor: str
    maker_key_pubkey: str
    maker_refund_pubkey: str
    hash_commitment: str
    timelock: int


class DistributionConfirmed(BaseModel):
    contract_id: str
    txid: str
    confirmations: int


class SecretRequest(BaseModel):
    round_id: str
    kind: str
    must_use: IdentityGeneration | None = None
    contract_ids: list[str] = Field(default_factory=list)


class ReleaseSecret(BaseModel):
    round_id: str
    secret: Secret
    generation: IdentityGeneration | None = None


class PreimageRevealed(BaseModel):
    preimage: Preimage
    hash_spend_txid: str | None = None


class SessionUpdate(BaseModel):
    phase: SwapPhase
    reason: str = ""
    contract_id: str | None = None


class ErrorMessage(BaseModel):
    reason: str
    error_type: str = "error"


PAYLOAD_TYPES: dict[MessageType, type[BaseModel]] = {
    MessageType.REGISTER_INPUT: RegisterInput,
    MessageType.CERTIFICATE_NONCE: CertificateNonce,
    MessageType.CERTIFICATE_REQUEST: CertificateRequest,
    MessageType.BLIND_CERTIFICATE: BlindCertificate,
    MessageType.REFUND_CONTRACT_PROPOSAL: RefundContractProposal,
    MessageType.REFUND_SIGNATURE: RefundSignature,
    MessageType.FINALIZED_TRANSACTION: FinalizedTransaction,
    MessageType.FUNDING_SIGNATURE: FundingSignature,
    MessageType.REGISTER_OUTPUT: RegisterOutput,
    MessageType.DISTRIBUTION_CONTRACT: DistributionContract,
    MessageType.DISTRIBUTION_CONFIRMED: DistributionConfirmed,
    MessageType.SECRET_REQUEST: SecretRequest,
    MessageType.RELEASE_SECRET: ReleaseSecret,
    MessageType.PREIMAGE_REVEALED: PreimageRevealed,
    MessageType.SESSION_UPDATE: SessionUpdate,
    MessageType.ERROR: ErrorMessage,
}


# =============================================================================
# Envelope
# =============================================================================


class ProtocolMessage(BaseModel):
    type: MessageType
    sender: str
    session_id: str = ""
    payload: dict[str, Any]

    @classmethod
    def build(cls, sender: str, session_id: str, payload: BaseModel) -> ProtocolMessage:
        for msg_type, payload_cls in PAYLOAD_TYPES.items():
            if type(payload) is payload_cls:
                return cls(
                    type=msg_type,
                    sender=sender,
                    session_id=session_id,
                    payload=payload.model_dump(mode="json"),
                )
        raise ValueError(f"No message type for payload {type(payload).__name__}")

    def parse(self, payload_cls: type[P]) -> P:
        """Validate the payload against its model. Raises pydantic.ValidationError."""
        expected = PAYLOAD_TYPES[self.type]
        if payload_cls is not expected:
            raise ValueError(
                f"{self.type.value} carries {expected.__name__}, not {payload_cls.__name__}"
            )
        return payload_cls.model_validate(self.payload)

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type.value,
                "sender": self.sender,
                "session_id": self.session_id,
                "data": self.payload,
            }
        )

    @classmethod
    def from_json(cls, data: str) -> ProtocolMessage:
        obj = json.loads(data)
        return cls(
            type=MessageType(obj["type"]),
            sender=obj["sender"],
            session_id=obj.get("session_id", ""),
            payload=obj["data"],
        )

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> ProtocolMessage:
        return cls.from_json(data.decode("utf-8"))


class Outbound(NamedTuple):
    """A message and the handle it is addressed to."""

    recipient: str
    message: ProtocolMessage


def error_message(
    sender: str, session_id: str, reason: str, error_type: str = "error"
) -> ProtocolMessage:
    return ProtocolMessage.build(
        sender, session_id, ErrorMessage(reason=reason, error_type=error_type)
    )


__all__ = [
    "JOINSWAP_PROTOCOL_VERSION",
    "MAKER_HANDLE",
    "HASHPATH_ROUND",
    "USERKEY_ROUND",
    "MAKERKEY_ROUND",
    "MessageType",
    "RegisterInput",
    "CertificateNonce",
    "BlindRequest",
    "CertificateRequest",
    "BlindResponse",
    "BlindCertificate",
    "RefundEntry",
    "RefundContractProposal",
    "RefundSignature",
    "FinalizedTransaction",
    "FundingSignature",
    "RegisterOutput",
    "DistributionContract",
    "DistributionConfirmed",
    "SecretRequest",
    "ReleaseSecret",
    "PreimageRevealed",
    "SessionUpdate",
    "ErrorMessage",
    "PAYLOAD_TYPES",
    "ProtocolMessage",
    "Outbound",
    "error_message",
]
