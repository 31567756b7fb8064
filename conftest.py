"""
Root pytest configuration for the JoinSwap test suites.

Adds the ``--fail-on-skip`` option shared by jscore, maker and user tests.
"""

from __future__ import annotations

import pytest
from pytest import StashKey

_fail_on_skip_key: StashKey[bool] = StashKey[bool]()


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--fail-on-skip",
        action="store_true",
        default=False,
        help="Report skipped tests as failures",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.stash[_fail_on_skip_key] = config.getoption("--fail-on-skip", default=False)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]):
    """Turn a skip into a failure when ``--fail-on-skip`` is given."""
    outcome = yield
    report: pytest.TestReport = outcome.get_result()
    if not item.config.stash.get(_fail_on_skip_key, False) or not report.skipped:
        return

    if isinstance(report.longrepr, tuple) and len(report.longrepr) >= 3:
        reason = report.longrepr[2]
    else:
        reason = str(report.longrepr or "unknown reason")
    report.outcome = "failed"
    report.longrepr = f"Skipped with --fail-on-skip: {reason}"
