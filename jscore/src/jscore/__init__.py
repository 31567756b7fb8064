"""
jscore - Core library for JoinSwap components

Provides contracts, blind certificates, secret exchange, timeouts and the
wire protocol shared by maker and user.
"""

from jscore.version import __version__

from jscore.models import Contract, SwapPhase, Transaction
from jscore.protocol import JOINSWAP_PROTOCOL_VERSION, MessageType, ProtocolMessage

__all__ = [
    "Contract",
    "SwapPhase",
    "Transaction",
    "MessageType",
    "ProtocolMessage",
    "JOINSWAP_PROTOCOL_VERSION",
    "__version__",
]
