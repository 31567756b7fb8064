"""
Protocol coordinator: the maker side of JoinSwap.

The coordinator is sans-IO. ``handle(message)`` and ``tick()`` mutate
session state and return the messages to send as ``Outbound`` pairs; the
run loop (or a test harness) delivers them. Phase flow of a session:

    COLLECTING_REGISTRATIONS -> BUILDING_FUNDING -> AWAITING_REFUND_SIGS
    -> AWAITING_FUNDING_SIGS -> FUNDED -> DISTRIBUTING
    -> AWAITING_HASHPATH_SECRETS -> AWAITING_USERKEY_SECRETS
    -> AWAITING_MAKERKEY_SECRETS -> COMPLETE

Failures before FUNDED end the session REFUNDED (users never signed a
broadcastable funding transaction or hold a signed refund). After FUNDED
they end MAKER_OWNS_AFTER_CSV, or DEGRADED_COMPLETE once the maker has the
users' hash path shares and spends the funding contract with the preimage.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from jscore.channels import Channel, Inbox
from jscore.contracts import (
    build_distribution_contract,
    build_distribution_transaction,
    build_funding_contract,
    build_funding_transaction,
    build_hash_spend_transaction,
    build_refund_transaction,
)
from jscore.crypto import (
    SECP256K1_N,
    generate_preimage,
    is_valid_pubkey,
    load_private_key,
    pubkey_hex,
)
from jscore.descriptors import DescriptorScriptEngine
from jscore.errors import (
    ContractError,
    ExchangeError,
    IdentityGenerationMismatch,
    InsufficientSignatures,
    InvalidSignature,
    InvalidUTXO,
    JoinSwapError,
    OrderingViolation,
    RegistrarError,
    RoundIncomplete,
    UnderfundedContract,
    ValidationError,
)
from jscore.exchange import ExpectedSecret, ReleaseCondition
from jscore.interfaces import Broadcaster, MakerWallet, ScriptEngine, SignatureBackend
from jscore.models import (
    MAX_MONEY,
    PRE_FUNDED_PHASES,
    DegradedCompletion,
    DistributionState,
    Identity,
    IdentityGeneration,
    PathKind,
    Preimage,
    PrivateKeyShare,
    SwapPhase,
)
from jscore.network import TransportError
from jscore.paths import get_sessions_dir
from jscore.protocol import (
    HASHPATH_ROUND,
    JOINSWAP_PROTOCOL_VERSION,
    MAKER_HANDLE,
    MAKERKEY_ROUND,
    USERKEY_ROUND,
    BlindCertificate,
    BlindResponse,
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
    RefundEntry,
    RefundSignature,
    RegisterInput,
    RegisterOutput,
    ReleaseSecret,
    SecretRequest,
    SessionUpdate,
    error_message,
)
from jscore.signing import EcdsaSignatureBackend
from jscore.tasks import run_periodic_task
from jscore.timeouts import Clock, MonotonicClock
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from maker.config import MakerConfig
from maker.session import DistributionRecord, OutputRegistration, Registration, SwapSession

REGISTRATION_TIMER = "registration"
REFUND_SIGS_TIMER = "refund_sigs"
FUNDING_SIGS_TIMER = "funding_sigs"
OUTPUT_REGISTRATION_TIMER = "output_registration"

# Phases in which each inbound message type is accepted
EXPECTED_PHASES: dict[MessageType, frozenset[SwapPhase]] = {
    MessageType.REGISTER_INPUT: frozenset({SwapPhase.COLLECTING_REGISTRATIONS}),
    MessageType.CERTIFICATE_REQUEST: frozenset({SwapPhase.COLLECTING_REGISTRATIONS}),
    MessageType.REFUND_SIGNATURE: frozenset({SwapPhase.AWAITING_REFUND_SIGS}),
    MessageType.FUNDING_SIGNATURE: frozenset({SwapPhase.AWAITING_FUNDING_SIGS}),
    MessageType.REGISTER_OUTPUT: frozenset({SwapPhase.FUNDED}),
    MessageType.RELEASE_SECRET: frozenset(
        {SwapPhase.AWAITING_HASHPATH_SECRETS, SwapPhase.AWAITING_MAKERKEY_SECRETS}
    ),
}

# Message types only certified OLD identities may send
OLD_IDENTITY_MESSAGES = frozenset({MessageType.REFUND_SIGNATURE, MessageType.FUNDING_SIGNATURE})

ROUND_FOR_PHASE = {
    SwapPhase.AWAITING_HASHPATH_SECRETS: HASHPATH_ROUND,
    SwapPhase.AWAITING_USERKEY_SECRETS: USERKEY_ROUND,
    SwapPhase.AWAITING_MAKERKEY_SECRETS: MAKERKEY_ROUND,
}

Handler = Callable[[SwapSession, ProtocolMessage], list[Outbound]]


class ProtocolCoordinator:
    def __init__(
        self,
        config: MakerConfig,
        wallet: MakerWallet,
        broadcaster: Broadcaster,
        script_engine: ScriptEngine | None = None,
        signature_backend: SignatureBackend | None = None,
        clock: Clock | None = None,
    ):
        self.config = config
        self.wallet = wallet
        self.broadcaster = broadcaster
        self.script_engine = script_engine or DescriptorScriptEngine()
        self.backend = signature_backend or EcdsaSignatureBackend()
        self.clock = clock or MonotonicClock()

        self.sessions: dict[str, SwapSession] = {}
        self.channels: dict[str, Channel] = {}
        self.running = False
        self._collecting: SwapSession | None = None
        self._archived: set[str] = set()

        self._handlers: dict[MessageType, Handler] = {
            MessageType.REGISTER_INPUT: self._handle_register_input,
            MessageType.CERTIFICATE_REQUEST: self._handle_certificate_request,
            MessageType.REFUND_SIGNATURE: self._handle_refund_signature,
            MessageType.FUNDING_SIGNATURE: self._handle_funding_signature,
            MessageType.REGISTER_OUTPUT: self._handle_register_output,
            MessageType.RELEASE_SECRET: self._handle_release_secret,
            MessageType.ERROR: self._handle_peer_error,
        }

    # =========================================================================
    # Sessions
    # =========================================================================

    def open_session(self) -> SwapSession:
        session = SwapSession(self.config, self.clock)
        session.arm(REGISTRATION_TIMER, self.config.registration_timeout, retries=0)
        self.sessions[session.session_id] = session
        self._collecting = session
        logger.info(
            f"Opened session {session.session_id[:8]} "
            f"({self.config.min_participants}-{self.config.max_participants} participants)"
        )
        return session

    def collecting_session(self) -> SwapSession:
        """The session currently accepting registrations, opened on demand."""
        if (
            self._collecting is None
            or self._collecting.phase != SwapPhase.COLLECTING_REGISTRATIONS
        ):
            return self.open_session()
        return self._collecting

    def _route(self, message: ProtocolMessage) -> SwapSession | None:
        if message.type == MessageType.REGISTER_INPUT and not message.session_id:
            return self.collecting_session()
        return self.sessions.get(message.session_id)

    def _finish_if_terminal(self, session: SwapSession) -> None:
        if not session.is_terminal or session.session_id in self._archived:
            return
        self._archived.add(session.session_id)
        logger.info(f"Session {session.session_id[:8]} finished: {session.phase.value}")
        if self.config.archive_sessions:
            try:
                session.archive(get_sessions_dir(self.config.data_dir))
            except OSError as e:
                logger.error(f"Failed to archive session {session.session_id[:8]}: {e}")

    # =========================================================================
    # Message helpers
    # =========================================================================

    @staticmethod
    def _send(session: SwapSession, recipient: str, payload: BaseModel) -> Outbound:
        return Outbound(recipient, ProtocolMessage.build(MAKER_HANDLE, session.session_id, payload))

    @staticmethod
    def _error(session_id: str, recipient: str, reason: str, error_type: str = "error") -> Outbound:
        return Outbound(recipient, error_message(MAKER_HANDLE, session_id, reason, error_type))

    def _announce(self, session: SwapSession, reason: str) -> list[Outbound]:
        update = SessionUpdate(phase=session.phase, reason=reason)
        return [self._send(session, handle, update) for handle in session.all_handles]

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    async def handle(self, message: ProtocolMessage) -> list[Outbound]:
        """Process one inbound message and return the messages it triggers."""
        logger.debug(f"Received {message.type.value} from {message.sender}")

        session = self._route(message)
        if session is None:
            return [
                self._error(
                    message.session_id,
                    message.sender,
                    f"Unknown session {message.session_id[:8]}",
                    "unknown_session",
                )
            ]

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"Ignoring unexpected {message.type.value} from {message.sender}")
            return [
                self._error(
                    session.session_id,
                    message.sender,
                    f"Makers do not accept {message.type.value} messages",
                    "unexpected_message",
                )
            ]

        try:
            self._check_ordering(session, message)
            outbound = handler(session, message)
        except OrderingViolation as e:
            logger.warning(f"Session {session.session_id[:8]}: {e}")
            outbound = [
                self._error(session.session_id, message.sender, str(e), "OrderingViolation")
            ]
        except PydanticValidationError as e:
            error = ValidationError(
                f"Malformed {message.type.value} payload ({e.error_count()} error(s))"
            )
            outbound = self._on_validation_error(session, message, error)
        except ValidationError as e:
            outbound = self._on_validation_error(session, message, e)
        except (RegistrarError, ExchangeError) as e:
            logger.warning(
                f"Session {session.session_id[:8]}: {type(e).__name__} from {message.sender}: {e}"
            )
            outbound = [self._error(session.session_id, message.sender, str(e), type(e).__name__)]

        self._finish_if_terminal(session)
        return outbound

    def _check_ordering(self, session: SwapSession, message: ProtocolMessage) -> None:
        allowed = EXPECTED_PHASES.get(message.type)
        if allowed is not None and session.phase not in allowed:
            raise OrderingViolation(
                f"{message.type.value} not accepted in phase {session.phase.value}"
            )
        if (
            message.type in OLD_IDENTITY_MESSAGES
            and session.generation_of(message.sender) != IdentityGeneration.OLD
        ):
            raise OrderingViolation(f"{message.sender} is not a participant of this session")

    def _on_validation_error(
        self, session: SwapSession, message: ProtocolMessage, error: ValidationError
    ) -> list[Outbound]:
        """
        Validation errors reject a single registration while collecting,
        abort the whole session before FUNDED and only concern the sender
        after it.
        """
        error_type = type(error).__name__
        logger.warning(
            f"Session {session.session_id[:8]}: {error_type} from {message.sender}: {error}"
        )
        reply = self._error(session.session_id, message.sender, str(error), error_type)

        if session.phase == SwapPhase.COLLECTING_REGISTRATIONS:
            registration = session.registrations.get(message.sender)
            if registration is not None and not registration.certified:
                self._drop_registration(session, registration)
            return [reply]

        if session.phase in PRE_FUNDED_PHASES:
            return [reply] + self._fail(session, f"{error_type} from {message.sender}: {error}")

        return [reply]

    def _handle_peer_error(self, session: SwapSession, message: ProtocolMessage) -> list[Outbound]:
        """A participant that aborts after registration takes the session down with it."""
        error = message.parse(ErrorMessage)
        logger.warning(
            f"Session {session.session_id[:8]}: {message.sender} reported "
            f"{error.error_type}: {error.reason}"
        )
        if (
            session.phase in PRE_FUNDED_PHASES
            and session.phase != SwapPhase.COLLECTING_REGISTRATIONS
            and session.generation_of(message.sender) == IdentityGeneration.OLD
        ):
            return self._fail(session, f"{message.sender} aborted: {error.reason}")
        return []

    # =========================================================================
    # Registration
    # =========================================================================

    def _validate_registration(self, session: SwapSession, payload: RegisterInput) -> None:
        if payload.protocol_version != JOINSWAP_PROTOCOL_VERSION:
            raise ValidationError(
                f"Protocol version {payload.protocol_version} not supported "
                f"(expected {JOINSWAP_PROTOCOL_VERSION})"
            )

        keys = [payload.key_pubkey, payload.hash_pubkey, payload.refund_pubkey]
        for key in keys:
            if not is_valid_pubkey(key):
                raise ValidationError(f"Invalid public key: {key[:16]}...")
        if len(set(keys)) != len(keys):
            raise ValidationError("Key path, hash path and refund keys must all differ")
        if set(keys) & session.known_keys():
            raise ValidationError("Public key already registered in this session")

        outpoints = [u.outpoint for u in payload.utxos]
        if len(set(outpoints)) != len(outpoints):
            raise InvalidUTXO("Duplicate inputs in registration")
        if set(outpoints) & session.known_outpoints():
            raise InvalidUTXO("Input already registered in this session")
        for utxo in payload.utxos:
            if utxo.owner_pubkey is None or utxo.contract_id is not None:
                raise InvalidUTXO(f"Input {utxo.outpoint[:16]}... has no spendable owner key")

        if len(payload.output_amounts) > self.config.max_outputs:
            raise InvalidUTXO(
                f"{len(payload.output_amounts)} outputs requested, "
                f"at most {self.config.max_outputs} allowed"
            )
        value = sum(u.amount for u in payload.utxos)
        if value > MAX_MONEY:
            raise InvalidUTXO(f"Inputs of {value} sats exceed the money supply")
        if any(amount <= 0 for amount in payload.output_amounts):
            raise InvalidUTXO("Output amounts must be positive")
        if sum(payload.output_amounts) > value:
            raise InvalidUTXO(
                f"Outputs total {sum(payload.output_amounts)} sats but inputs only {value} sats"
            )
        if value <= self.config.refund_fee:
            raise InvalidUTXO(f"Inputs of {value} sats cannot cover the refund fee")

    def _handle_register_input(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        try:
            payload = message.parse(RegisterInput)
        except PydanticValidationError as e:
            raise InvalidUTXO(f"Malformed registration ({e.error_count()} error(s))") from e

        if message.sender in session.registrations:
            raise InvalidUTXO(f"{message.sender} already registered inputs")
        self._validate_registration(session, payload)

        registration = Registration(
            handle=message.sender,
            key_pubkey=payload.key_pubkey,
            hash_pubkey=payload.hash_pubkey,
            utxos=list(payload.utxos),
            refund_pubkey=payload.refund_pubkey,
            output_amounts=list(payload.output_amounts),
        )
        try:
            for amount in payload.output_amounts:
                nonce = session.registrar.open_issuance(registration.commitment, amount)
                registration.nonces[nonce.nonce_id] = nonce
        except RegistrarError as e:
            session.registrar.cancel_issuance(registration.nonces, registration.commitment)
            raise InvalidUTXO(f"Cannot issue certificates: {e}") from e
        session.registrations[message.sender] = registration

        logger.info(
            f"Session {session.session_id[:8]}: registration from {message.sender} "
            f"({len(payload.utxos)} input(s), {registration.value} sats, "
            f"{len(payload.output_amounts)} output(s))"
        )
        nonces = CertificateNonce(
            registrar_pubkey=session.registrar.master_pubkey,
            nonces=list(registration.nonces.values()),
        )
        return [self._send(session, message.sender, nonces)]

    def _handle_certificate_request(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        payload = message.parse(CertificateRequest)
        registration = session.registrations.get(message.sender)
        if registration is None:
            raise OrderingViolation("certificate_request before register_input")
        if registration.certified:
            raise OrderingViolation("Certificates were already issued for this registration")

        requested = [r.nonce_id for r in payload.requests]
        if len(set(requested)) != len(requested) or set(requested) != set(registration.nonces):
            raise ValidationError("Certificate request must cover every issuance nonce once")

        # Parse every challenge before signing any of them
        challenges: dict[str, int] = {}
        for request in payload.requests:
            try:
                challenge = int(request.challenge, 16)
            except ValueError:
                raise ValidationError(f"Malformed challenge for {request.nonce_id[:8]}") from None
            if not 0 < challenge < SECP256K1_N:
                raise ValidationError(f"Challenge for {request.nonce_id[:8]} out of range")
            challenges[request.nonce_id] = challenge

        signatures = [
            BlindResponse(
                nonce_id=nonce_id,
                signature=format(session.registrar.sign_blinded(nonce_id, challenge), "064x"),
            )
            for nonce_id, challenge in challenges.items()
        ]
        registration.certified = True
        logger.info(
            f"Session {session.session_id[:8]}: issued {len(signatures)} certificate(s), "
            f"{len(session.certified_registrations)}/{self.config.max_participants} registered"
        )

        outbound = [self._send(session, message.sender, BlindCertificate(signatures=signatures))]
        if len(session.certified_registrations) >= self.config.max_participants:
            outbound.extend(self._start_building(session))
        return outbound

    @staticmethod
    def _drop_registration(session: SwapSession, registration: Registration) -> None:
        """Forget an uncertified registration and free the value its nonces booked."""
        del session.registrations[registration.handle]
        session.registrar.cancel_issuance(registration.nonces, registration.commitment)

    def _registration_closed(self, session: SwapSession) -> list[Outbound]:
        certified = len(session.certified_registrations)
        if certified >= self.config.min_participants:
            return self._start_building(session)
        return self._fail(
            session,
            f"Only {certified} valid registration(s), need {self.config.min_participants}",
        )

    # =========================================================================
    # Funding
    # =========================================================================

    def _start_building(self, session: SwapSession) -> list[Outbound]:
        session.disarm(REGISTRATION_TIMER)
        if self._collecting is session:
            self._collecting = None

        outbound: list[Outbound] = []
        for registration in list(session.registrations.values()):
            if not registration.certified:
                self._drop_registration(session, registration)
                outbound.append(
                    self._error(
                        session.session_id,
                        registration.handle,
                        "Registration closed before certificates were issued",
                        "registration_closed",
                    )
                )

        session.transition(
            SwapPhase.BUILDING_FUNDING, f"{len(session.registrations)} participant(s)"
        )
        try:
            proposal = self._build_funding(session)
        except (ValidationError, UnderfundedContract) as e:
            return outbound + self._fail(session, f"Could not build funding contract: {e}")

        session.transition(SwapPhase.AWAITING_REFUND_SIGS, "refund transaction proposed")
        session.arm(REFUND_SIGS_TIMER, self.config.signature_timeout)
        outbound.extend(self._send(session, h, proposal) for h in session.old_handles)
        return outbound

    def _build_funding(self, session: SwapSession) -> RefundContractProposal:
        registrations = sorted(session.certified_registrations, key=lambda r: r.handle)
        maker_key = load_private_key(self.wallet.new_keypair()[0])
        maker_hash_key = load_private_key(self.wallet.new_keypair()[0])
        preimage, hash_commitment = generate_preimage()

        contract = build_funding_contract(
            [r.key_pubkey for r in registrations] + [pubkey_hex(maker_key)],
            sum(r.value for r in registrations),
            hash_pubkeys=[r.hash_pubkey for r in registrations] + [pubkey_hex(maker_hash_key)],
            hash_commitment=hash_commitment,
        )
        funding_tx = build_funding_transaction(
            contract, [u for r in registrations for u in r.utxos]
        )
        refunds = [(r.refund_pubkey, r.value) for r in registrations]
        refund_tx = build_refund_transaction(
            funding_tx,
            contract,
            refunds,
            self.config.refund_timelock,
            self.config.refund_fee,
        )
        session.arena.add(contract)

        session.maker_key = maker_key
        session.maker_hash_key = maker_hash_key
        session.preimage = preimage
        session.hash_commitment = hash_commitment
        session.funding_contract = contract
        session.funding_tx = funding_tx
        session.refund_tx = refund_tx

        hash_path = contract.hash_path
        if hash_path is None:
            raise ContractError("Funding contract was built without a hash path")
        session.proposal = RefundContractProposal(
            contract=contract,
            funding_tx=funding_tx.model_copy(deep=True),
            refund_tx=refund_tx.model_copy(deep=True),
            participant_keys=list(contract.key_path.participants),
            hash_pubkeys=list(hash_path.participants),
            hash_commitment=hash_commitment,
            refunds=[RefundEntry(pubkey=pk, amount=amount) for pk, amount in refunds],
            refund_timelock=self.config.refund_timelock,
            refund_fee=self.config.refund_fee,
        )
        logger.info(
            f"Session {session.session_id[:8]}: funding contract "
            f"{contract.contract_id[:16]}... locks {contract.funding_amount} sats"
        )
        return session.proposal

    def _handle_refund_signature(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        payload = message.parse(RefundSignature)
        registration = session.registrations[message.sender]
        if session.refund_tx is None or session.maker_key is None:
            raise OrderingViolation("Refund signature before the refund transaction was built")

        signature = payload.signature
        if signature.signer != registration.key_pubkey:
            raise InvalidSignature(f"Refund signature from {message.sender} is not for its key")
        self.backend.merge(session.refund_tx, signature)

        maker_pubkey = pubkey_hex(session.maker_key)
        missing = session.refund_tx.missing_signers()
        logger.debug(
            f"Session {session.session_id[:8]}: refund signatures missing from {len(missing)}"
        )
        if missing != [maker_pubkey]:
            return []

        maker_signature = self.backend.partial_sign(
            session.refund_tx, PathKind.KEY, session.maker_key
        )
        self.backend.merge(session.refund_tx, maker_signature)
        self.backend.combine(session.refund_tx)

        session.disarm(REFUND_SIGS_TIMER)
        session.transition(SwapPhase.AWAITING_FUNDING_SIGS, "refund transaction finalized")
        session.arm(FUNDING_SIGS_TIMER, self.config.signature_timeout)
        finalized = FinalizedTransaction(transaction=session.refund_tx)
        return [self._send(session, handle, finalized) for handle in session.old_handles]

    def _handle_funding_signature(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        payload = message.parse(FundingSignature)
        registration = session.registrations[message.sender]
        if session.funding_tx is None:
            raise OrderingViolation("Funding signature before the funding transaction was built")

        owners = {u.owner_pubkey for u in registration.utxos}
        for signature in payload.signatures:
            if signature.signer not in owners:
                raise InvalidSignature(
                    f"{message.sender} signed for an input it did not register"
                )
            self.backend.merge(session.funding_tx, signature)

        if not session.funding_tx.is_finalized:
            return []

        self.backend.combine(session.funding_tx)
        session.funding_txid = self.broadcaster.submit(session.funding_tx)
        session.disarm(FUNDING_SIGS_TIMER)
        session.transition(SwapPhase.FUNDED, f"funding tx {session.funding_txid[:16]}...")
        session.arm(
            OUTPUT_REGISTRATION_TIMER, self.config.output_registration_timeout, retries=0
        )
        finalized = FinalizedTransaction(transaction=session.funding_tx)
        return [self._send(session, handle, finalized) for handle in session.old_handles]

    # =========================================================================
    # Distribution
    # =========================================================================

    def _handle_register_output(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        payload = message.parse(RegisterOutput)
        sender = message.sender
        if sender in session.outputs:
            raise ValidationError(f"{sender} already registered an output")

        keys = [payload.key_pubkey, payload.hash_pubkey]
        if not all(is_valid_pubkey(k) for k in keys) or len(set(keys)) != 2:
            raise ValidationError("Output keys must be two distinct valid public keys")
        if set(keys) & session.known_keys():
            raise ValidationError("Output key already registered in this session")

        generation = (
            IdentityGeneration.OLD if sender in session.registrations else IdentityGeneration.NEW
        )
        session.registrar.redeem(payload.certificate, Identity(id=sender, generation=generation))
        session.outputs[sender] = OutputRegistration(
            handle=sender,
            key_pubkey=payload.key_pubkey,
            hash_pubkey=payload.hash_pubkey,
            amount=payload.certificate.amount,
        )
        logger.info(
            f"Session {session.session_id[:8]}: output of {payload.certificate.amount} sats "
            f"registered, {session.registrar.outstanding} certificate(s) outstanding"
        )

        if session.registrar.outstanding > 0:
            return []
        return self._start_distribution(session)

    def _fund_distribution(
        self, session: SwapSession, output: OutputRegistration
    ) -> DistributionRecord:
        if session.hash_commitment is None:
            raise ContractError("No hash commitment to lock distribution contracts to")
        maker_key, maker_pubkey = self.wallet.new_keypair()
        refund_key, refund_pubkey = self.wallet.new_keypair()

        contract = build_distribution_contract(
            output.key_pubkey,
            maker_pubkey,
            session.hash_commitment,
            self.config.distribution_timelock,
            output.amount,
            maker_refund_pubkey=refund_pubkey,
            user_hash_pubkey=output.hash_pubkey,
        )
        session.arena.add(contract)

        tx = build_distribution_transaction(
            contract, self.wallet.select_utxos(output.amount), self.wallet.change_pubkey()
        )
        for signer in tx.required_signers:
            signature = self.backend.partial_sign(tx, None, self.wallet.signing_key(signer))
            self.backend.merge(tx, signature)
        self.broadcaster.submit(tx)

        return DistributionRecord(
            handle=output.handle,
            contract=contract,
            transaction=tx,
            maker_key=maker_key,
            maker_refund_key=refund_key,
        )

    def _start_distribution(self, session: SwapSession) -> list[Outbound]:
        session.disarm(OUTPUT_REGISTRATION_TIMER)
        try:
            for handle in session.new_handles:
                record = self._fund_distribution(session, session.outputs[handle])
                session.distributions[record.contract_id] = record
        except (ValidationError, UnderfundedContract, InsufficientSignatures) as e:
            return self._fail(session, f"Could not fund distribution contracts: {e}")

        session.transition(
            SwapPhase.DISTRIBUTING, f"{len(session.distributions)} distribution contract(s)"
        )
        outbound: list[Outbound] = []
        for record in session.distributions.values():
            descriptor = self.script_engine.encode(record.contract)
            refund_path = record.contract.refund_path
            if refund_path is None or session.hash_commitment is None:
                return self._fail(session, f"Distribution {record.contract_id[:16]}... is unusable")
            payload = DistributionContract(
                contract=record.contract,
                transaction=record.transaction,
                descriptor=descriptor.descriptor,
                maker_key_pubkey=pubkey_hex(record.maker_key),
                maker_refund_pubkey=refund_path.owner,
                hash_commitment=session.hash_commitment,
                timelock=refund_path.relative_timelock,
            )
            outbound.append(self._send(session, record.handle, payload))
            session.arm(record.timer_tag, self.config.distribution_timeout, retries=0)

        outbound.extend(self._check_confirmations(session))
        return outbound

    def _check_confirmations(self, session: SwapSession) -> list[Outbound]:
        if session.phase != SwapPhase.DISTRIBUTING:
            return []

        outbound: list[Outbound] = []
        for record in session.distributions.values():
            if record.state != DistributionState.PENDING:
                continue
            record.confirmations = self.broadcaster.confirmations(record.transaction.txid)
            if record.confirmations < self.config.required_confirmations:
                continue
            record.state = DistributionState.CONFIRMED
            session.disarm(record.timer_tag)
            logger.info(
                f"Session {session.session_id[:8]}: distribution "
                f"{record.contract_id[:16]}... confirmed"
            )
            outbound.append(
                self._send(
                    session,
                    record.handle,
                    DistributionConfirmed(
                        contract_id=record.contract_id,
                        txid=record.transaction.txid,
                        confirmations=record.confirmations,
                    ),
                )
            )

        outbound.extend(self._resolve_distributions(session))
        return outbound

    def _resolve_distributions(self, session: SwapSession) -> list[Outbound]:
        states = [r.state for r in session.distributions.values()]
        if DistributionState.PENDING in states:
            return []
        if DistributionState.MAKER_OWNS_AFTER_CSV in states:
            failed = states.count(DistributionState.MAKER_OWNS_AFTER_CSV)
            return self._fail(session, f"{failed} distribution contract(s) timed out")
        return self._open_hashpath_round(session)

    def _distribution_timeout(self, session: SwapSession, tag: str) -> list[Outbound]:
        contract_id = tag.split(":", 1)[1]
        record = session.distributions.get(contract_id)
        if record is None or record.state != DistributionState.PENDING:
            return []

        record.state = DistributionState.MAKER_OWNS_AFTER_CSV
        logger.warning(
            f"Session {session.session_id[:8]}: distribution {contract_id[:16]}... timed out"
        )
        update = SessionUpdate(
            phase=SwapPhase.MAKER_OWNS_AFTER_CSV,
            reason="distribution contract not confirmed in time",
            contract_id=contract_id,
        )
        return [self._send(session, record.handle, update)] + self._resolve_distributions(
            session
        )

    # =========================================================================
    # Secret exchange
    # =========================================================================

    def _open_round(
        self,
        session: SwapSession,
        round_id: str,
        expected: dict[str, ExpectedSecret],
        must_use: IdentityGeneration,
        retries: int | None = None,
        request: bool = True,
    ) -> list[Outbound]:
        retries = self.config.message_retries if retries is None else retries
        deadline = (
            self.clock.now()
            + self.config.secret_timeout
            + retries * self.config.retry_timeout
        )
        session.exchange.open_round(round_id, expected, must_use=must_use, deadline=deadline)
        session.open_round_id = round_id
        session.arm(round_id, self.config.secret_timeout, retries)
        if not request:
            return []
        return [
            self._send(session, holder, self._secret_request(round_id, expected, must_use))
            for holder in sorted(expected)
        ]

    @staticmethod
    def _secret_request(
        round_id: str, expected: dict[str, ExpectedSecret], must_use: IdentityGeneration
    ) -> SecretRequest:
        return SecretRequest(
            round_id=round_id,
            kind="key_share",
            must_use=must_use,
            contract_ids=sorted({e.contract_id for e in expected.values() if e.contract_id}),
        )

    def _open_hashpath_round(self, session: SwapSession) -> list[Outbound]:
        if session.funding_contract is None:
            return self._fail(session, "No funding contract to exchange hash path shares for")
        session.transition(
            SwapPhase.AWAITING_HASHPATH_SECRETS, "all distribution contracts confirmed"
        )
        funding_id = session.funding_contract.contract_id
        expected = {
            r.handle: ExpectedSecret.key_share(funding_id, PathKind.HASH, r.hash_pubkey)
            for r in session.certified_registrations
        }
        return self._open_round(session, HASHPATH_ROUND, expected, IdentityGeneration.OLD)

    def _open_userkey_round(self, session: SwapSession) -> list[Outbound]:
        session.transition(SwapPhase.AWAITING_USERKEY_SECRETS, "hash path shares received")
        expected = {
            r.handle: ExpectedSecret.key_share(r.contract_id, PathKind.KEY, pubkey_hex(r.maker_key))
            for r in session.distributions.values()
        }
        outbound = self._open_round(
            session, USERKEY_ROUND, expected, IdentityGeneration.NEW, retries=0, request=False
        )
        self._release_user_key_secrets(session)
        return outbound + self._try_release(session, USERKEY_ROUND)

    def _release_user_key_secrets(self, session: SwapSession) -> None:
        """Queue the maker's key path key of every distribution contract for its NEW owner."""
        condition = ReleaseCondition(USERKEY_ROUND, IdentityGeneration.NEW)
        for record in session.distributions.values():
            share = PrivateKeyShare(
                path=PathKind.KEY,
                contract_id=record.contract_id,
                owner=pubkey_hex(record.maker_key),
                key=record.maker_key.secret.hex(),
            )
            session.exchange.schedule_release(share, record.handle, condition)

    def _open_makerkey_round(self, session: SwapSession) -> list[Outbound]:
        if session.funding_contract is None:
            return self._fail(session, "No funding contract to exchange key path shares for")
        session.transition(SwapPhase.AWAITING_MAKERKEY_SECRETS, "user key shares released")
        funding_id = session.funding_contract.contract_id
        expected = {
            r.handle: ExpectedSecret.key_share(funding_id, PathKind.KEY, r.key_pubkey)
            for r in session.certified_registrations
        }
        return self._open_round(session, MAKERKEY_ROUND, expected, IdentityGeneration.OLD)

    def _handle_release_secret(
        self, session: SwapSession, message: ProtocolMessage
    ) -> list[Outbound]:
        payload = message.parse(ReleaseSecret)
        round_id = ROUND_FOR_PHASE[session.phase]
        if payload.round_id != round_id:
            raise OrderingViolation(
                f"Secret for round '{payload.round_id}' while '{round_id}' is open"
            )

        generation = session.generation_of(message.sender)
        if payload.generation is not None and payload.generation != generation:
            raise IdentityGenerationMismatch(
                f"{message.sender} claims {payload.generation.value} identity"
            )
        session.exchange.schedule_release(
            payload.secret, message.sender, ReleaseCondition(round_id, generation)
        )
        return self._try_release(session, round_id)

    def _try_release(self, session: SwapSession, round_id: str) -> list[Outbound]:
        try:
            batch = session.exchange.release_all(round_id)
        except RoundIncomplete as e:
            logger.debug(f"Session {session.session_id[:8]}: {e}")
            return []

        session.disarm(round_id)
        session.open_round_id = None

        if round_id == HASHPATH_ROUND:
            session.hash_path_shares = {
                h: s for h, s in batch.items() if isinstance(s, PrivateKeyShare)
            }
            return self._open_userkey_round(session)

        if round_id == USERKEY_ROUND:
            outbound = [
                self._send(
                    session,
                    handle,
                    ReleaseSecret(
                        round_id=USERKEY_ROUND,
                        secret=secret,
                        generation=IdentityGeneration.NEW,
                    ),
                )
                for handle, secret in sorted(batch.items())
            ]
            return outbound + self._open_makerkey_round(session)

        session.key_path_shares = {
            h: s for h, s in batch.items() if isinstance(s, PrivateKeyShare)
        }
        for record in session.distributions.values():
            record.state = DistributionState.COMPLETE
        session.transition(SwapPhase.COMPLETE, "all key path shares exchanged")
        return self._announce(session, "swap complete")

    # =========================================================================
    # Fallbacks
    # =========================================================================

    def _fail(self, session: SwapSession, reason: str) -> list[Outbound]:
        if session.is_terminal:
            return []
        if session.open_round_id is not None:
            session.exchange.discard(session.open_round_id)
            session.open_round_id = None

        target = session.fallback_phase()
        if target == SwapPhase.MAKER_OWNS_AFTER_CSV:
            reclaimable = {DistributionState.PENDING}
            # Users hold the maker's distribution keys only from the maker key round on
            if session.phase != SwapPhase.AWAITING_MAKERKEY_SECRETS:
                reclaimable.add(DistributionState.CONFIRMED)
            for record in session.distributions.values():
                if record.state in reclaimable:
                    record.state = DistributionState.MAKER_OWNS_AFTER_CSV

        session.failure = reason
        session.transition(target, reason)
        logger.warning(f"Session {session.session_id[:8]} failed: {reason}")
        return self._announce(session, reason)

    def _degrade(self, session: SwapSession, reason: str) -> list[Outbound]:
        """
        Spend the funding contract through its HashPath.

        Broadcasting the preimage lets every user claim its distribution
        contract through the distribution HashPath, at the cost of linking
        all of them on chain.
        """
        if (
            session.funding_tx is None
            or session.funding_contract is None
            or session.preimage is None
            or session.hash_commitment is None
            or session.maker_hash_key is None
        ):
            return self._fail(session, f"{reason}; no funding hash path to spend")

        triggered_in = session.phase
        if session.open_round_id is not None:
            session.exchange.discard(session.open_round_id)
            session.open_round_id = None

        hash_spend = build_hash_spend_transaction(
            session.funding_tx, session.funding_contract, self.wallet.change_pubkey()
        )
        keys = [load_private_key(s.key) for s in session.hash_path_shares.values()]
        keys.append(session.maker_hash_key)
        try:
            for key in keys:
                self.backend.merge(
                    hash_spend, self.backend.partial_sign(hash_spend, PathKind.HASH, key)
                )
            hash_spend.witness_data["preimage"] = session.preimage
            txid = self.broadcaster.submit(hash_spend)
        except JoinSwapError as e:
            return self._fail(session, f"{reason}; hash path spend failed: {e}")

        session.degraded = DegradedCompletion(
            session_id=session.session_id,
            reason=reason,
            triggered_in=triggered_in,
            hash_commitment=session.hash_commitment,
            preimage=session.preimage,
            hash_spend_txid=txid,
            affected_contracts=sorted(session.distributions),
        )
        for record in session.distributions.values():
            if record.state != DistributionState.COMPLETE:
                record.state = DistributionState.DEGRADED

        session.transition(SwapPhase.DEGRADED_COMPLETE, reason)
        logger.warning(
            f"Session {session.session_id[:8]} degraded: {reason}, preimage revealed in "
            f"{txid[:16]}..."
        )
        revealed = PreimageRevealed(
            preimage=Preimage(hash_commitment=session.hash_commitment, preimage=session.preimage),
            hash_spend_txid=txid,
        )
        outbound = [self._send(session, handle, revealed) for handle in session.all_handles]
        return outbound + self._announce(session, reason)

    # =========================================================================
    # Timers
    # =========================================================================

    async def tick(self) -> list[Outbound]:
        """Poll confirmations and expired timers of every live session."""
        outbound: list[Outbound] = []
        for session in list(self.sessions.values()):
            if session.is_terminal:
                continue
            outbound.extend(self._check_confirmations(session))
            for tag in session.monitor.poll_expired():
                if session.is_terminal:
                    break
                outbound.extend(self._on_timeout(session, tag))
            self._finish_if_terminal(session)
        return outbound

    def _on_timeout(self, session: SwapSession, tag: str) -> list[Outbound]:
        if tag.startswith("distribution:"):
            return self._distribution_timeout(session, tag)

        retries = session.retries_left.get(tag, 0)
        if retries > 0:
            session.retries_left[tag] = retries - 1
            session.monitor.arm_in(self.config.retry_timeout, tag)
            logger.info(
                f"Session {session.session_id[:8]}: {tag} timed out, re-requesting "
                f"({retries - 1} retries left)"
            )
            return self._retry(session, tag)
        session.retries_left.pop(tag, None)

        if tag == REGISTRATION_TIMER:
            return self._registration_closed(session)
        if tag == REFUND_SIGS_TIMER:
            missing = len(session.refund_tx.missing_signers()) if session.refund_tx else 0
            return self._fail(session, f"Refund signatures missing from {missing} signer(s)")
        if tag == FUNDING_SIGS_TIMER:
            missing = len(session.funding_tx.missing_signers()) if session.funding_tx else 0
            error = UnderfundedContract(f"Funding signatures missing from {missing} input owner(s)")
            return self._fail(session, str(error))
        if tag == OUTPUT_REGISTRATION_TIMER:
            return self._fail(
                session,
                f"{session.registrar.outstanding} certificate(s) never redeemed",
            )
        if tag == HASHPATH_ROUND:
            return self._fail(session, "Hash path shares not released in time")
        if tag in (USERKEY_ROUND, MAKERKEY_ROUND):
            return self._degrade(session, f"{tag} round timed out")

        logger.warning(f"Session {session.session_id[:8]}: unknown timer {tag}")
        return []

    def _retry(self, session: SwapSession, tag: str) -> list[Outbound]:
        if tag == REFUND_SIGS_TIMER:
            if session.refund_tx is None or session.proposal is None:
                return []
            missing = set(session.refund_tx.missing_signers())
            return [
                self._send(session, r.handle, session.proposal)
                for r in session.certified_registrations
                if r.key_pubkey in missing
            ]

        if tag == FUNDING_SIGS_TIMER:
            if session.funding_tx is None or session.refund_tx is None:
                return []
            missing = set(session.funding_tx.missing_signers())
            finalized = FinalizedTransaction(transaction=session.refund_tx)
            return [
                self._send(session, r.handle, finalized)
                for r in session.certified_registrations
                if any(u.owner_pubkey in missing for u in r.utxos)
            ]

        if tag in (HASHPATH_ROUND, MAKERKEY_ROUND):
            exchange_round = session.exchange.get_round(tag)
            request = self._secret_request(
                tag, exchange_round.expected, IdentityGeneration.OLD
            )
            return [self._send(session, h, request) for h in exchange_round.missing()]

        return []

    # =========================================================================
    # Run loop
    # =========================================================================

    def attach(self, handle: str, channel: Channel) -> None:
        self.channels[handle] = channel

    def detach(self, handle: str) -> None:
        self.channels.pop(handle, None)

    async def deliver(self, outbound: list[Outbound]) -> None:
        for recipient, message in outbound:
            channel = self.channels.get(recipient)
            if channel is None:
                logger.warning(f"No channel for {recipient}, dropping {message.type.value}")
                continue
            try:
                await channel.send(message)
            except TransportError as e:
                logger.warning(f"Failed to send {message.type.value} to {recipient}: {e}")
                self.detach(recipient)

    async def _tick_and_deliver(self) -> None:
        await self.deliver(await self.tick())

    async def run(self, inbox: Inbox) -> None:
        """Consume the inbox until stop() is called."""
        self.running = True
        timers = asyncio.create_task(
            run_periodic_task(
                "Session timers",
                self._tick_and_deliver,
                self.config.tick_interval,
                running_check=lambda: self.running,
            )
        )
        try:
            while self.running:
                item = await inbox.get(timeout=self.config.tick_interval)
                if item is None:
                    continue
                _, message = item
                try:
                    outbound = await self.handle(message)
                except Exception as e:
                    logger.exception(
                        f"Unexpected error handling {message.type.value} from {message.sender}: {e}"
                    )
                    continue
                await self.deliver(outbound)
        finally:
            timers.cancel()
            self.running = False

    def stop(self) -> None:
        self.running = False


__all__ = [
    "REGISTRATION_TIMER",
    "REFUND_SIGS_TIMER",
    "FUNDING_SIGS_TIMER",
    "OUTPUT_REGISTRATION_TIMER",
    "ProtocolCoordinator",
]
