"""
Participant agent: the user side of JoinSwap.

The agent holds one OLD identity (inputs, funding contract, refund) and one
NEW identity per registered output amount. It never signs or releases
anything it has not checked by rebuilding it from public parameters:

- the refund transaction is signed only after the funding contract, the
  funding transaction and the refund transaction were rebuilt identically;
- funding signatures are given only for a fully signed refund;
- the funding hash path share is released only once every distribution
  contract was rebuilt and confirmed;
- the funding key path share is released only after the maker's key path
  key of every distribution contract was received.

Like the coordinator, the agent is sans-IO: ``handle(message)`` returns the
messages to send, each tagged with the identity that must send it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from coincurve import PrivateKey
from jscore.contracts import (
    build_distribution_contract,
    build_funding_contract,
    build_funding_transaction,
    build_refund_transaction,
    validate,
)
from jscore.crypto import generate_identity_handle, generate_keypair, hash_preimage, pubkey_hex
from jscore.descriptors import DescriptorScriptEngine
from jscore.errors import (
    ContractError,
    ContractMismatch,
    ExchangeError,
    InvalidSignature,
    InvalidUTXO,
    OrderingViolation,
    PhaseTimeout,
    RegistrarError,
    UnderfundedContract,
    UnexpectedSecret,
    ValidationError,
)
from jscore.interfaces import Broadcaster, ScriptEngine, SignatureBackend
from jscore.models import (
    PRE_FUNDED_PHASES,
    Certificate,
    Contract,
    ContractOutput,
    Identity,
    IdentityGeneration,
    PartialSignature,
    PathKind,
    Preimage,
    PrivateKeyShare,
    SwapPhase,
    Transaction,
    TransactionKind,
    UTXORef,
)
from jscore.protocol import (
    HASHPATH_ROUND,
    MAKER_HANDLE,
    MAKERKEY_ROUND,
    USERKEY_ROUND,
    BlindCertificate,
    BlindRequest,
    CertificateNonce,
    CertificateRequest,
    DistributionConfirmed,
    DistributionContract,
    ErrorMessage,
    FinalizedTransaction,
    FundingSignature,
    MessageType,
    Outbound,
    PreimageRevealed,
    ProtocolMessage,
    RefundContractProposal,
    RefundSignature,
    RegisterInput,
    RegisterOutput,
    ReleaseSecret,
    SecretRequest,
    SessionUpdate,
)
from jscore.registrar import CertificateRequester
from jscore.signing import EcdsaSignatureBackend
from jscore.timeouts import Clock, MonotonicClock, TimeoutMonitor
from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from user.config import UserConfig


class RecoveryMethod(str, Enum):
    NOTHING_AT_RISK = "nothing_at_risk"
    REFUND_TX = "refund_tx"
    KEY_PATH = "key_path"
    DISTRIBUTION_HASH_PATH = "distribution_hash_path"


class RecoveryPlan(BaseModel):
    """How the user gets its coins back from the current state."""

    method: RecoveryMethod
    reason: str
    contract_ids: list[str] = Field(default_factory=list)
    available_after: int = Field(default=0, description="Blocks before the spend is valid")
    expires_after: int | None = Field(
        default=None, description="Blocks after which the maker can take the coins"
    )
    transaction: Transaction | None = None


@dataclass
class OutputSlot:
    """One NEW identity and the distribution contract paying it."""

    identity: Identity
    certificate: Certificate
    key: PrivateKey | None = None
    hash_key: PrivateKey | None = None
    contract: Contract | None = None
    transaction: Transaction | None = None
    maker_key_pubkey: str | None = None
    confirmed: bool = False
    maker_key_share: PrivateKeyShare | None = None

    @property
    def handle(self) -> str:
        return self.identity.id

    @property
    def amount(self) -> int:
        return self.certificate.amount

    @property
    def key_pubkey(self) -> str:
        if self.key is None:
            raise OrderingViolation(f"No output key generated for {self.handle} yet")
        return pubkey_hex(self.key)

    @property
    def hash_pubkey(self) -> str:
        if self.hash_key is None:
            raise OrderingViolation(f"No output hash key generated for {self.handle} yet")
        return pubkey_hex(self.hash_key)


class ParticipantAgent:
    def __init__(
        self,
        coin_keys: Iterable[PrivateKey] = (),
        config: UserConfig | None = None,
        broadcaster: Broadcaster | None = None,
        script_engine: ScriptEngine | None = None,
        signature_backend: SignatureBackend | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or UserConfig()
        self.broadcaster = broadcaster
        self.script_engine = script_engine or DescriptorScriptEngine()
        self.backend = signature_backend or EcdsaSignatureBackend()
        self.clock = clock or MonotonicClock()
        self.timers = TimeoutMonitor(self.clock)

        self.identity_old = Identity(
            id=generate_identity_handle(), generation=IdentityGeneration.OLD
        )
        self.session_id = ""
        self.phase = SwapPhase.COLLECTING_REGISTRATIONS

        self._coin_keys = {pubkey_hex(k): k for k in coin_keys}
        self.key_key, self.key_pubkey = generate_keypair()
        self.hash_key, self.hash_pubkey = generate_keypair()
        self.refund_key: PrivateKey | None = None
        self.refund_pubkey: str | None = None

        self.utxos: list[UTXORef] = []
        self.output_amounts: list[int] = []
        self.registrar_pubkey: str | None = None
        self._requesters: dict[str, CertificateRequester] = {}
        self.slots: dict[str, OutputSlot] = {}

        self.proposal: RefundContractProposal | None = None
        self.refund_tx: Transaction | None = None
        self.funding_tx: Transaction | None = None
        self.funding_signed = False
        self.preimage: Preimage | None = None

        self._pending_requests: dict[str, SecretRequest] = {}
        self.released_rounds: set[str] = set()
        self.failure: str | None = None
        self.last_error: str | None = None

        self._handlers: dict[MessageType, Callable[[ProtocolMessage], list[Outbound]]] = {
            MessageType.CERTIFICATE_NONCE: self._on_certificate_nonce,
            MessageType.BLIND_CERTIFICATE: self._on_blind_certificate,
            MessageType.REFUND_CONTRACT_PROPOSAL: self._on_refund_proposal,
            MessageType.FINALIZED_TRANSACTION: self._on_finalized_transaction,
            MessageType.DISTRIBUTION_CONTRACT: self._on_distribution_contract,
            MessageType.DISTRIBUTION_CONFIRMED: self._on_distribution_confirmed,
            MessageType.SECRET_REQUEST: self._on_secret_request,
            MessageType.RELEASE_SECRET: self._on_release_secret,
            MessageType.PREIMAGE_REVEALED: self._on_preimage_revealed,
            MessageType.SESSION_UPDATE: self._on_session_update,
            MessageType.ERROR: self._on_error,
        }

    # =========================================================================
    # Identities
    # =========================================================================

    @property
    def identities_new(self) -> list[Identity]:
        return [slot.identity for slot in self.slots.values()]

    @property
    def handles(self) -> list[str]:
        return [self.identity_old.id] + list(self.slots)

    def owns(self, handle: str) -> bool:
        return handle == self.identity_old.id or handle in self.slots

    @property
    def value(self) -> int:
        return sum(u.amount for u in self.utxos)

    @property
    def is_finished(self) -> bool:
        return self.failure is not None or self.phase in (
            SwapPhase.COMPLETE,
            SwapPhase.REFUNDED,
            SwapPhase.MAKER_OWNS_AFTER_CSV,
            SwapPhase.DEGRADED_COMPLETE,
        )

    def _message(self, sender: str, payload: BaseModel) -> Outbound:
        return Outbound(MAKER_HANDLE, ProtocolMessage.build(sender, self.session_id, payload))

    def _slot_for_contract(self, contract_id: str) -> OutputSlot | None:
        for slot in self.slots.values():
            if slot.contract is not None and slot.contract.contract_id == contract_id:
                return slot
        return None

    # =========================================================================
    # Registration
    # =========================================================================

    def submit_registration(
        self,
        utxos: list[UTXORef],
        refund_pubkey: str | None = None,
        output_amounts: list[int] | None = None,
    ) -> Outbound:
        """
        Register inputs under the OLD identity.

        Args:
            utxos: Coins to swap; each must be owned by one of the agent's coin keys
            refund_pubkey: Where the refund transaction pays. A fresh key is
                generated if omitted.
            output_amounts: Amounts of the NEW outputs (defaults to one output
                of the full input value)

        Raises:
            InvalidUTXO: unknown owner key, or outputs exceeding the inputs
            OrderingViolation: inputs were already registered
        """
        if self.utxos:
            raise OrderingViolation("Inputs already registered")
        if not utxos:
            raise InvalidUTXO("No inputs to register")
        for utxo in utxos:
            if utxo.owner_pubkey not in self._coin_keys:
                raise InvalidUTXO(f"No key for input {utxo.outpoint[:16]}...")

        value = sum(u.amount for u in utxos)
        amounts = list(output_amounts) if output_amounts else [value]
        if any(a <= 0 for a in amounts) or sum(amounts) > value:
            raise InvalidUTXO(f"Outputs {amounts} do not fit in {value} sats of inputs")
        if len(amounts) > self.config.max_outputs:
            raise InvalidUTXO(f"At most {self.config.max_outputs} outputs per registration")

        if refund_pubkey is None:
            self.refund_key, refund_pubkey = generate_keypair()
        self.refund_pubkey = refund_pubkey
        self.utxos = list(utxos)
        self.output_amounts = amounts

        logger.info(
            f"Registering {len(utxos)} input(s) worth {value} sats for {len(amounts)} output(s)"
        )
        self._rearm()
        return self._message(
            self.identity_old.id,
            RegisterInput(
                key_pubkey=self.key_pubkey,
                hash_pubkey=self.hash_pubkey,
                utxos=self.utxos,
                refund_pubkey=refund_pubkey,
                output_amounts=amounts,
            ),
        )

    def _on_certificate_nonce(self, message: ProtocolMessage) -> list[Outbound]:
        payload = message.parse(CertificateNonce)
        if self.registrar_pubkey is not None:
            raise OrderingViolation("Certificate nonces already received")
        if sorted(n.amount for n in payload.nonces) != sorted(self.output_amounts):
            raise ValidationError("Issuance nonces do not match the requested output amounts")

        self.session_id = message.session_id
        self.registrar_pubkey = payload.registrar_pubkey
        requests = []
        for nonce in payload.nonces:
            requester = CertificateRequester(payload.registrar_pubkey, nonce.amount)
            challenge = requester.challenge(nonce)
            self._requesters[nonce.nonce_id] = requester
            requests.append(
                BlindRequest(nonce_id=nonce.nonce_id, challenge=format(challenge, "064x"))
            )

        return [self._message(self.identity_old.id, CertificateRequest(requests=requests))]

    def _on_blind_certificate(self, message: ProtocolMessage) -> list[Outbound]:
        payload = message.parse(BlindCertificate)
        responses = {r.nonce_id: r for r in payload.signatures}
        if set(responses) != set(self._requesters):
            raise ValidationError("Blind certificate does not answer every request")

        for nonce_id, response in responses.items():
            certificate = self._requesters.pop(nonce_id).finalize(int(response.signature, 16))
            identity = Identity(id=generate_identity_handle(), generation=IdentityGeneration.NEW)
            self.slots[identity.id] = OutputSlot(identity=identity, certificate=certificate)

        logger.info(f"Received {len(self.slots)} certificate(s)")
        return []

    # =========================================================================
    # Funding
    # =========================================================================

    def verify_and_sign_refund(self, proposal: RefundContractProposal) -> PartialSignature:
        """
        Rebuild the proposed contracts and sign the refund transaction.

        Raises:
            ContractMismatch: anything rebuilt from the public parameters
                differs from the proposal, or the proposal leaves out the
                agent's keys, inputs or refund output
        """
        if not self.slots:
            raise OrderingViolation("Refund proposed before certificates were issued")
        if self.key_pubkey not in proposal.participant_keys:
            raise ContractMismatch("Own key path key missing from the funding contract")
        if self.hash_pubkey not in proposal.hash_pubkeys:
            raise ContractMismatch("Own hash path key missing from the funding contract")

        proposed_inputs = {u.outpoint for u in proposal.funding_tx.inputs}
        if not {u.outpoint for u in self.utxos} <= proposed_inputs:
            raise ContractMismatch("Own inputs missing from the funding transaction")

        refunds = [(entry.pubkey, entry.amount) for entry in proposal.refunds]
        if (self.refund_pubkey, self.value) not in refunds:
            raise ContractMismatch("No refund output returning our full input value")
        if proposal.refund_timelock != self.config.refund_timelock:
            raise ContractMismatch(
                f"Refund timelock {proposal.refund_timelock}, expected "
                f"{self.config.refund_timelock}"
            )
        if proposal.refund_fee > self.config.refund_fee:
            raise ContractMismatch(f"Refund fee {proposal.refund_fee} sats is too high")

        try:
            contract = build_funding_contract(
                proposal.participant_keys,
                sum(u.amount for u in proposal.funding_tx.inputs),
                hash_pubkeys=proposal.hash_pubkeys,
                hash_commitment=proposal.hash_commitment,
            )
            funding_tx = build_funding_transaction(contract, proposal.funding_tx.inputs)
            refund_tx = build_refund_transaction(
                funding_tx, contract, refunds, proposal.refund_timelock, proposal.refund_fee
            )
        except (ContractError, UnderfundedContract) as e:
            raise ContractMismatch(f"Cannot rebuild the proposed contract: {e}") from e

        if contract != proposal.contract:
            raise ContractMismatch("Funding contract differs from the rebuilt one")
        if sum(amount for _, amount in refunds) != contract.funding_amount:
            raise ContractMismatch("Refund outputs do not return the full funding amount")
        if not funding_tx.same_template(proposal.funding_tx):
            raise ContractMismatch("Funding transaction differs from the rebuilt one")
        if not refund_tx.same_template(proposal.refund_tx):
            raise ContractMismatch("Refund transaction differs from the rebuilt one")

        self.proposal = proposal
        self.phase = SwapPhase.AWAITING_REFUND_SIGS
        logger.info(f"Verified funding contract {contract.contract_id[:16]}..., signing refund")
        return self.backend.partial_sign(refund_tx, PathKind.KEY, self.key_key)

    def _on_refund_proposal(self, message: ProtocolMessage) -> list[Outbound]:
        proposal = message.parse(RefundContractProposal)
        if self.proposal is not None and self.proposal != proposal:
            raise ContractMismatch("Maker changed the refund proposal")
        signature = self.verify_and_sign_refund(proposal)
        return [self._message(self.identity_old.id, RefundSignature(signature=signature))]

    def sign_funding(self, finalized_refund_tx: Transaction) -> list[PartialSignature]:
        """
        Sign the funding transaction for every owned input.

        Raises:
            OrderingViolation: no verified proposal, or the refund transaction
                is not the verified one with every signature valid
        """
        if self.proposal is None:
            raise OrderingViolation("Funding signatures requested before a verified refund")
        if not finalized_refund_tx.same_template(self.proposal.refund_tx):
            raise OrderingViolation("Signed refund is not the verified refund transaction")
        if not finalized_refund_tx.is_finalized:
            raise OrderingViolation(
                f"Refund transaction still misses {len(finalized_refund_tx.missing_signers())} "
                f"signature(s)"
            )
        for signer, signature in finalized_refund_tx.signatures.items():
            if signer != signature.signer or not self.backend.verify(
                finalized_refund_tx, signature
            ):
                raise OrderingViolation(f"Invalid refund signature from {signer[:16]}...")

        self.refund_tx = finalized_refund_tx.model_copy(deep=True)
        funding_tx = self.proposal.funding_tx
        owners = sorted({u.owner_pubkey for u in self.utxos if u.owner_pubkey})
        signatures = [
            self.backend.partial_sign(funding_tx, None, self._coin_keys[owner]) for owner in owners
        ]
        self.funding_signed = True
        self.phase = SwapPhase.AWAITING_FUNDING_SIGS
        logger.info(f"Refund transaction {self.refund_tx.txid[:16]}... held, signing funding")
        return signatures

    def _on_finalized_transaction(self, message: ProtocolMessage) -> list[Outbound]:
        tx = message.parse(FinalizedTransaction).transaction
        if tx.kind == TransactionKind.REFUND:
            signatures = self.sign_funding(tx)
            return [self._message(self.identity_old.id, FundingSignature(signatures=signatures))]

        if tx.kind != TransactionKind.FUNDING:
            raise ValidationError(f"Unexpected finalized {tx.kind.value} transaction")
        if self.proposal is None or self.refund_tx is None:
            raise OrderingViolation("Funding transaction before the refund was signed")
        if not tx.same_template(self.proposal.funding_tx):
            raise ContractMismatch("Broadcast funding transaction differs from the verified one")
        if not tx.is_finalized or not all(
            self.backend.verify(tx, sig) for sig in tx.signatures.values()
        ):
            raise InvalidSignature("Funding transaction is not validly signed")

        self.funding_tx = tx
        self.phase = SwapPhase.FUNDED
        logger.info(f"Funding transaction {tx.txid[:16]}... broadcast, registering outputs")
        return self._register_outputs()

    def _register_outputs(self) -> list[Outbound]:
        outbound = []
        for slot in self.slots.values():
            slot.key, _ = generate_keypair()
            slot.hash_key, _ = generate_keypair()
            outbound.append(
                self._message(
                    slot.handle,
                    RegisterOutput(
                        key_pubkey=slot.key_pubkey,
                        hash_pubkey=slot.hash_pubkey,
                        certificate=slot.certificate,
                    ),
                )
            )
        return outbound

    # =========================================================================
    # Distribution
    # =========================================================================

    def verify_distribution(self, payload: DistributionContract) -> Contract:
        """
        Rebuild a distribution contract and check its funding transaction.

        Raises:
            ContractMismatch: the contract pays none of our outputs, or differs
                from the rebuilt contract, or is not funded by its transaction
        """
        if self.proposal is None or self.funding_tx is None:
            raise OrderingViolation("Distribution contract before funding")
        try:
            validate(payload.contract)
        except ContractError as e:
            raise ContractMismatch(f"Malformed distribution contract: {e}") from e

        slot = next(
            (
                s
                for s in self.slots.values()
                if s.key is not None and s.key_pubkey in payload.contract.key_path.participants
            ),
            None,
        )
        if slot is None:
            raise ContractMismatch("Distribution contract does not pay any of our outputs")
        if payload.hash_commitment != self.proposal.hash_commitment:
            raise ContractMismatch("Distribution hash differs from the funding contract hash")
        if payload.timelock != self.config.distribution_timelock:
            raise ContractMismatch(
                f"Distribution timelock {payload.timelock}, expected "
                f"{self.config.distribution_timelock}"
            )

        try:
            expected = build_distribution_contract(
                slot.key_pubkey,
                payload.maker_key_pubkey,
                self.proposal.hash_commitment,
                self.config.distribution_timelock,
                slot.amount,
                maker_refund_pubkey=payload.maker_refund_pubkey,
                user_hash_pubkey=slot.hash_pubkey,
            )
        except ContractError as e:
            raise ContractMismatch(f"Cannot rebuild the distribution contract: {e}") from e

        if expected != payload.contract:
            raise ContractMismatch("Distribution contract differs from the rebuilt one")
        funded = any(
            isinstance(output, ContractOutput)
            and output.contract_id == expected.contract_id
            and output.amount == slot.amount
            for output in payload.transaction.outputs
        )
        if not funded:
            raise ContractMismatch("Distribution transaction does not fund the contract")
        if self.script_engine.encode(expected).descriptor != payload.descriptor:
            raise ContractMismatch("Descriptor does not match the distribution contract")

        slot.contract = expected
        slot.transaction = payload.transaction
        slot.maker_key_pubkey = payload.maker_key_pubkey
        logger.info(f"Verified distribution contract {expected.contract_id[:16]}...")
        return expected

    def _on_distribution_contract(self, message: ProtocolMessage) -> list[Outbound]:
        self.verify_distribution(message.parse(DistributionContract))
        self.phase = SwapPhase.DISTRIBUTING
        return self._answer_pending()

    @property
    def distributions_verified(self) -> bool:
        return bool(self.slots) and all(s.contract is not None for s in self.slots.values())

    @property
    def distributions_confirmed(self) -> bool:
        return self.distributions_verified and all(s.confirmed for s in self.slots.values())

    async def await_distribution(self, deadline: float) -> list[Contract]:
        """
        Wait until every NEW identity holds a verified distribution contract.

        Raises:
            PhaseTimeout: ``deadline`` (on the agent's clock) passed first
        """
        while True:
            if self.distributions_verified:
                return [s.contract for s in self.slots.values() if s.contract is not None]
            if self.clock.now() >= deadline:
                missing = sum(1 for s in self.slots.values() if s.contract is None)
                raise PhaseTimeout(
                    "distribution", f"{missing} distribution contract(s) never arrived"
                )
            await asyncio.sleep(self.config.poll_interval)

    def _on_distribution_confirmed(self, message: ProtocolMessage) -> list[Outbound]:
        payload = message.parse(DistributionConfirmed)
        slot = self._slot_for_contract(payload.contract_id)
        if slot is None or slot.transaction is None:
            raise ContractMismatch(f"Confirmation for unknown contract {payload.contract_id[:16]}")
        if payload.txid != slot.transaction.txid:
            raise ContractMismatch("Confirmed transaction is not the verified distribution")

        if self.broadcaster is not None:
            confirmations = self.broadcaster.confirmations(payload.txid)
            if confirmations < self.config.required_confirmations:
                raise ValidationError(
                    f"Distribution {payload.txid[:16]}... has {confirmations} confirmation(s)"
                )

        slot.confirmed = True
        return self._answer_pending()

    # =========================================================================
    # Secret exchange
    # =========================================================================

    def _on_secret_request(self, message: ProtocolMessage) -> list[Outbound]:
        request = message.parse(SecretRequest)
        if request.round_id not in (HASHPATH_ROUND, MAKERKEY_ROUND):
            raise ValidationError(f"Unknown secret round '{request.round_id}'")
        if request.must_use not in (None, IdentityGeneration.OLD):
            raise ValidationError(f"Round '{request.round_id}' must be answered by OLD identities")
        self._pending_requests[request.round_id] = request
        return self._answer_pending()

    def _answer_pending(self) -> list[Outbound]:
        """Answer every pending secret request whose preconditions now hold."""
        outbound = []
        if HASHPATH_ROUND in self._pending_requests and self.distributions_confirmed:
            del self._pending_requests[HASHPATH_ROUND]
            outbound.append(self.release_hash_path_secret())
        if MAKERKEY_ROUND in self._pending_requests and self.user_key_secrets_complete:
            del self._pending_requests[MAKERKEY_ROUND]
            outbound.append(self.release_key_path_secret())
        return outbound

    def release_hash_path_secret(self) -> Outbound:
        """
        Release the funding hash path key, always from the OLD identity.

        Raises:
            OrderingViolation: a distribution contract is not yet verified and confirmed
        """
        if not self.distributions_confirmed or self.proposal is None:
            raise OrderingViolation(
                "Hash path share requested before every distribution contract was confirmed"
            )
        share = PrivateKeyShare(
            path=PathKind.HASH,
            contract_id=self.proposal.contract.contract_id,
            owner=self.hash_pubkey,
            key=self.hash_key.secret.hex(),
        )
        self.released_rounds.add(HASHPATH_ROUND)
        self.phase = SwapPhase.AWAITING_HASHPATH_SECRETS
        logger.info("Releasing funding hash path share")
        return self._message(
            self.identity_old.id,
            ReleaseSecret(round_id=HASHPATH_ROUND, secret=share, generation=IdentityGeneration.OLD),
        )

    def _on_release_secret(self, message: ProtocolMessage) -> list[Outbound]:
        payload = message.parse(ReleaseSecret)
        if payload.round_id != USERKEY_ROUND:
            raise UnexpectedSecret(f"Maker released a secret in round '{payload.round_id}'")
        secret = payload.secret
        if not isinstance(secret, PrivateKeyShare):
            raise UnexpectedSecret("Expected a key share from the maker")

        slot = self._slot_for_contract(secret.contract_id)
        if (
            slot is None
            or secret.path != PathKind.KEY
            or secret.owner != slot.maker_key_pubkey
            or not secret.matches_owner()
        ):
            raise UnexpectedSecret("Key share does not match the distribution contract")

        slot.maker_key_share = secret
        if self.user_key_secrets_complete:
            self.phase = SwapPhase.AWAITING_MAKERKEY_SECRETS
            logger.info("Holding the maker key of every distribution contract")
        return self._answer_pending()

    @property
    def user_key_secrets_complete(self) -> bool:
        return bool(self.slots) and all(s.maker_key_share for s in self.slots.values())

    def release_key_path_secret(self) -> Outbound:
        """
        Release the funding key path key, always from the OLD identity.

        Raises:
            OrderingViolation: a distribution contract's maker key was not received yet
        """
        if not self.user_key_secrets_complete or self.proposal is None:
            raise OrderingViolation(
                "Key path share requested before every distribution key was received"
            )
        share = PrivateKeyShare(
            path=PathKind.KEY,
            contract_id=self.proposal.contract.contract_id,
            owner=self.key_pubkey,
            key=self.key_key.secret.hex(),
        )
        self.released_rounds.add(MAKERKEY_ROUND)
        logger.info("Releasing funding key path share")
        return self._message(
            self.identity_old.id,
            ReleaseSecret(round_id=MAKERKEY_ROUND, secret=share, generation=IdentityGeneration.OLD),
        )

    # =========================================================================
    # Deadlines
    # =========================================================================

    def phase_timeout(self, phase: SwapPhase) -> float:
        """
        Seconds to wait for the maker while in ``phase``.

        Each bound covers the maker's own timeout for the step it is running,
        its re-requests and one extra ``retry_timeout`` of grace.
        """
        config = self.config
        grace = config.retry_timeout
        retries = config.message_retries * config.retry_timeout
        if phase == SwapPhase.COLLECTING_REGISTRATIONS:
            return config.registration_timeout + grace
        if phase in (SwapPhase.AWAITING_REFUND_SIGS, SwapPhase.AWAITING_FUNDING_SIGS):
            return config.signature_timeout + retries + grace
        if phase == SwapPhase.FUNDED:
            return config.output_registration_timeout + grace
        if phase == SwapPhase.DISTRIBUTING:
            return config.distribution_timeout + config.secret_timeout + retries + grace
        if phase == SwapPhase.AWAITING_HASHPATH_SECRETS:
            # Hash path round, then the maker key release
            return 2 * config.secret_timeout + retries + grace
        return config.secret_timeout + retries + grace

    def _rearm(self) -> None:
        """Keep exactly one deadline armed, for the phase the agent is waiting in."""
        if self.is_finished:
            self.timers.cancel_all()
            return
        if self.timers.is_armed(self.phase.value):
            return
        self.timers.cancel_all()
        self.timers.arm_in(self.phase_timeout(self.phase), self.phase.value)

    def expire_deadlines(self) -> list[Outbound]:
        """Abort once the maker stayed silent past the current phase deadline."""
        expired = self.timers.poll_expired()
        if not expired or self.is_finished:
            return []
        self.timers.cancel_all()
        error = PhaseTimeout(expired[0], f"Maker sent nothing in time during {expired[0]}")
        return self._abort(f"{type(error).__name__}: {error}")

    # =========================================================================
    # Status
    # =========================================================================

    def _on_preimage_revealed(self, message: ProtocolMessage) -> list[Outbound]:
        preimage = message.parse(PreimageRevealed).preimage
        if self.proposal is None or preimage.hash_commitment != self.proposal.hash_commitment:
            raise ValidationError("Revealed preimage is for another contract")
        if hash_preimage(preimage.preimage) != preimage.hash_commitment:
            raise ValidationError("Revealed preimage does not hash to the commitment")
        self.preimage = preimage
        self.phase = SwapPhase.DEGRADED_COMPLETE
        logger.warning("Maker revealed the preimage, distribution hash paths are spendable")
        return []

    def _on_session_update(self, message: ProtocolMessage) -> list[Outbound]:
        update = message.parse(SessionUpdate)
        if update.contract_id is not None:
            logger.warning(f"Contract {update.contract_id[:16]}...: {update.reason}")
            return []
        if update.phase in (SwapPhase.REFUNDED, SwapPhase.MAKER_OWNS_AFTER_CSV):
            self.failure = update.reason
        self.phase = update.phase
        suffix = f": {update.reason}" if update.reason else ""
        logger.info(f"Session is now {update.phase.value}{suffix}")
        return []

    def _on_error(self, message: ProtocolMessage) -> list[Outbound]:
        error = message.parse(ErrorMessage)
        self.last_error = error.reason
        logger.warning(f"Maker error ({error.error_type}): {error.reason}")
        return []

    async def handle(self, message: ProtocolMessage) -> list[Outbound]:
        """React to one maker message; returns messages tagged with their sending identity."""
        if message.sender != MAKER_HANDLE:
            logger.warning(f"Ignoring {message.type.value} from {message.sender}")
            return []
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"Ignoring unexpected {message.type.value}")
            return []

        try:
            outbound = handler(message)
        except PydanticValidationError as e:
            outbound = self._abort(f"Malformed {message.type.value} ({e.error_count()} error(s))")
        except (ValidationError, RegistrarError, ExchangeError) as e:
            outbound = self._abort(f"{type(e).__name__}: {e}")
        self._rearm()
        return outbound

    def _abort(self, reason: str) -> list[Outbound]:
        """Stop cooperating. Before funding the maker is told so it can give up early."""
        logger.error(f"Aborting swap: {reason}")
        self.failure = reason
        if self.phase in PRE_FUNDED_PHASES and self.session_id:
            return [
                self._message(
                    self.identity_old.id, ErrorMessage(reason=reason, error_type="aborted")
                )
            ]
        return []

    def recovery_plan(self) -> RecoveryPlan:
        contract_ids = [s.contract.contract_id for s in self.slots.values() if s.contract]

        if self.user_key_secrets_complete:
            return RecoveryPlan(
                method=RecoveryMethod.KEY_PATH,
                reason="Holding both keys of every distribution contract",
                contract_ids=contract_ids,
            )
        if self.preimage is not None:
            return RecoveryPlan(
                method=RecoveryMethod.DISTRIBUTION_HASH_PATH,
                reason="Preimage revealed; claim distributions before the maker refund path",
                contract_ids=contract_ids,
                expires_after=self.config.distribution_timelock,
            )
        if self.funding_signed and self.refund_tx is not None:
            return RecoveryPlan(
                method=RecoveryMethod.REFUND_TX,
                reason="Funding signed; broadcast the refund transaction after its timelock",
                contract_ids=[self.refund_tx.inputs[0].contract_id or ""],
                available_after=self.refund_tx.relative_timelock,
                transaction=self.refund_tx,
            )
        return RecoveryPlan(
            method=RecoveryMethod.NOTHING_AT_RISK,
            reason="No funding signature given; inputs were never spendable by the maker",
        )


__all__ = ["RecoveryMethod", "RecoveryPlan", "OutputSlot", "ParticipantAgent"]
