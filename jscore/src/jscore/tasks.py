"""
Periodic background work, such as the maker's session timer sweep.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger


async def run_periodic_task(
    name: str,
    callback: Callable[[], Awaitable[None]],
    interval: float,
    running_check: Callable[[], bool] | None = None,
    max_consecutive_errors: int | None = None,
) -> int:
    """
    Await ``callback`` every ``interval`` seconds.

    A failing callback is logged and retried on the next interval. The loop
    ends when ``running_check`` returns False, when the task is cancelled, or
    after ``max_consecutive_errors`` failures in a row.

    Returns:
        Number of successful invocations
    """
    completed = 0
    failures = 0
    while running_check is None or running_check():
        try:
            await asyncio.sleep(interval)
            await callback()
        except asyncio.CancelledError:
            logger.debug(f"{name} cancelled after {completed} run(s)")
            raise
        except Exception as e:
            failures += 1
            logger.error(f"{name} failed ({failures} in a row): {e}")
            if max_consecutive_errors is not None and failures >= max_consecutive_errors:
                logger.error(f"Giving up on {name}")
                break
        else:
            completed += 1
            failures = 0
    return completed
