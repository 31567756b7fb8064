"""
Pytest configuration and fixtures for maker tests.
"""

import pytest
from _swap_harness import BTC, SwapHarness
from jscore.memory import InMemoryBroadcaster, StaticMakerWallet
from jscore.timeouts import ManualClock

from maker.config import MakerConfig


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_000.0)


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster(auto_confirm=1)


@pytest.fixture
def wallet() -> StaticMakerWallet:
    """Maker wallet with enough 5 BTC coins to fund every distribution contract."""
    wallet = StaticMakerWallet()
    for _ in range(8):
        wallet.add_coin(5 * BTC)
    return wallet


@pytest.fixture
def maker_config(tmp_path) -> MakerConfig:
    return MakerConfig(
        min_participants=2,
        max_participants=2,
        data_dir=tmp_path,
        archive_sessions=False,
    )


@pytest.fixture
def harness(maker_config, clock, broadcaster, wallet) -> SwapHarness:
    return SwapHarness(maker_config, clock, broadcaster, wallet)
