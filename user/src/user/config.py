"""
Configuration for JoinSwap users.
"""

from __future__ import annotations

from jscore.config import ProtocolConfig
from pydantic import Field


class UserConfig(ProtocolConfig):
    """
    Configuration for a swapping user.

    Inherits the protocol parameters from jscore.config.ProtocolConfig; the
    user checks every contract it is shown against these values.
    """

    maker_host: str = "127.0.0.1"
    maker_port: int = Field(default=4242, ge=1, le=65535)
    connection_timeout: float = Field(
        default=30.0, gt=0.0, description="Timeout in seconds for connecting to the maker"
    )
    poll_interval: float = Field(
        default=0.1, gt=0.0, description="Seconds between checks while waiting on the maker"
    )

    model_config = {"frozen": False}
