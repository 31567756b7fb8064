"""
Base configuration for JoinSwap components.

ProtocolConfig holds the parameters both sides of a swap must agree on,
plus the phase timeouts. MakerConfig and UserConfig inherit from it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class ProtocolConfig(BaseModel):
    """Protocol parameters and phase deadlines."""

    refund_timelock: int = Field(
        default=48,
        ge=1,
        description="Relative timelock (blocks) of the users' refund transaction",
    )
    distribution_timelock: int = Field(
        default=69,
        ge=1,
        description="Relative timelock (blocks) of the maker refund path on distribution contracts",
    )
    refund_fee: int = Field(
        default=1000,
        ge=0,
        description="Fee in satoshis of the refund transaction, split equally between users",
    )
    min_participants: int = Field(
        default=2,
        ge=2,
        description="Minimum number of users for a swap session",
    )
    max_participants: int = Field(
        default=10,
        ge=2,
        description="Session starts as soon as this many registrations are valid",
    )
    max_outputs: int = Field(
        default=10,
        ge=1,
        le=64,
        description="Maximum NEW outputs a single input registration may request",
    )
    registration_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds to collect input registrations",
    )
    signature_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds to collect refund or funding signatures",
    )
    output_registration_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Seconds for NEW identities to register their outputs",
    )
    distribution_timeout: float = Field(
        default=600.0,
        gt=0.0,
        description="Seconds for a distribution contract to be delivered and confirmed",
    )
    secret_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds per secret exchange round",
    )
    message_retries: int = Field(
        default=1,
        ge=0,
        description="Times a missing message is re-requested before the fallback fires",
    )
    retry_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Grace period in seconds after each re-request",
    )
    required_confirmations: int = Field(
        default=1,
        ge=0,
        description="Confirmations before a distribution transaction counts as final",
    )
    max_message_size: int = Field(
        default=2097152,
        ge=1024,
        description="Maximum message size in bytes (2MB default)",
    )

    model_config = {"frozen": False}

    @model_validator(mode="after")
    def validate_participants(self) -> ProtocolConfig:
        if self.max_participants < self.min_participants:
            raise ValueError(
                f"max_participants ({self.max_participants}) must be >= "
                f"min_participants ({self.min_participants})"
            )
        return self


__all__ = ["ProtocolConfig"]
