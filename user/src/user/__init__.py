"""
JoinSwap user: participant agent and maker client.
"""

from jscore.version import __version__

from user.agent import ParticipantAgent, RecoveryMethod, RecoveryPlan
from user.config import UserConfig

__all__ = ["ParticipantAgent", "RecoveryMethod", "RecoveryPlan", "UserConfig", "__version__"]
