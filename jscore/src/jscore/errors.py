"""
Exception hierarchy for JoinSwap components.

Validation errors are fatal to the session they occur in and are never
retried. Timeout and exchange errors are recoverable through the fallback
transition of the phase that raised them. Registrar errors only affect the
registration that triggered them.
"""

from __future__ import annotations


class JoinSwapError(Exception):
    """Base class for all JoinSwap protocol errors."""


# =============================================================================
# Validation
# =============================================================================


class ValidationError(JoinSwapError):
    """Malformed or inconsistent protocol data. Possible tampering."""


class InvalidUTXO(ValidationError):
    pass


class ContractError(ValidationError):
    pass


class InvalidParticipantSet(ContractError):
    pass


class ContractMismatch(ValidationError):
    """An independently rebuilt contract or transaction differs from the one received."""


class OrderingViolation(ValidationError):
    """A protocol step was attempted before the step it depends on completed."""


class InvalidSignature(ValidationError):
    pass


class TransactionFinalized(ValidationError):
    pass


class InvalidTransition(JoinSwapError):
    """A phase transition not allowed by the swap state machine."""


# =============================================================================
# Timeouts and funding
# =============================================================================


class SwapTimeoutError(JoinSwapError):
    """An expected message or batch did not arrive before its deadline."""


class PhaseTimeout(SwapTimeoutError):
    def __init__(self, phase_tag: str, message: str | None = None):
        self.phase_tag = phase_tag
        super().__init__(message or f"Timed out waiting in phase {phase_tag}")


class UnderfundedContract(JoinSwapError):
    """Signatures or inputs never reached what the contract requires."""


class InsufficientSignatures(JoinSwapError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing signatures from {len(missing)} signer(s)")


# =============================================================================
# Identity registrar
# =============================================================================


class RegistrarError(JoinSwapError):
    pass


class CertificateReused(RegistrarError):
    pass


class CertificateInvalid(RegistrarError):
    pass


# =============================================================================
# Key exchange
# =============================================================================


class ExchangeError(JoinSwapError):
    pass


class ExchangeTimeout(ExchangeError):
    def __init__(self, round_id: str):
        self.round_id = round_id
        super().__init__(f"Secret release round '{round_id}' timed out")


class RoundIncomplete(ExchangeError):
    def __init__(self, round_id: str, missing: list[str]):
        self.round_id = round_id
        self.missing = missing
        super().__init__(f"Round '{round_id}' still waiting on {len(missing)} holder(s)")


class IdentityGenerationMismatch(ExchangeError):
    pass


class UnexpectedSecret(ExchangeError):
    pass


__all__ = [
    "JoinSwapError",
    "ValidationError",
    "InvalidUTXO",
    "ContractError",
    "InvalidParticipantSet",
    "ContractMismatch",
    "OrderingViolation",
    "InvalidSignature",
    "TransactionFinalized",
    "InvalidTransition",
    "SwapTimeoutError",
    "PhaseTimeout",
    "UnderfundedContract",
    "InsufficientSignatures",
    "RegistrarError",
    "CertificateReused",
    "CertificateInvalid",
    "ExchangeError",
    "ExchangeTimeout",
    "RoundIncomplete",
    "IdentityGenerationMismatch",
    "UnexpectedSecret",
]
