"""
JoinSwap maker: protocol coordinator and TCP server.
"""

from jscore.version import __version__

from maker.config import MakerConfig
from maker.coordinator import ProtocolCoordinator
from maker.session import SwapSession

__all__ = ["MakerConfig", "ProtocolCoordinator", "SwapSession", "__version__"]
