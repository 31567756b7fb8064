"""
Pytest configuration and fixtures for user tests.
"""

import pytest
from _agent_helpers import BTC, MakerStub, make_coins
from jscore.timeouts import ManualClock

from user.agent import ParticipantAgent
from user.config import UserConfig


@pytest.fixture
def user_config() -> UserConfig:
    return UserConfig()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=500.0)


@pytest.fixture
def stub(user_config) -> MakerStub:
    return MakerStub(user_config)


@pytest.fixture
def agent(user_config, clock) -> ParticipantAgent:
    """Agent with one 3 BTC coin split into two outputs, inputs submitted."""
    keys, utxos = make_coins([3 * BTC])
    agent = ParticipantAgent(keys, user_config, clock=clock)
    agent.submit_registration(utxos, output_amounts=[BTC, 2 * BTC])
    return agent
