"""Generic polling utilities.

Every wait in kuberoll busy-polls an external API at a fixed interval;
none of the APIs involved push notifications.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger


class PollExhausted(Exception):
    """Raised when poll_until runs out of attempts."""

    def __init__(self, description: str, attempts: int) -> None:
        super().__init__(f"'{description}' unsuccessful after {attempts} attempts")
        self.description = description
        self.attempts = attempts


async def poll_until[T](
    poll_fn: Callable[[], Awaitable[T]],
    ready_check: Callable[[T], bool],
    *,
    max_attempts: int,
    interval: float,
    description: str = "resource",
    log: Logger | None = None,
) -> T:
    """Poll until ``ready_check(poll_fn())`` holds, at most ``max_attempts`` times.

    Errors raised by poll_fn propagate immediately; only "not ready yet"
    is retried.

    Args:
        poll_fn: Async function that reads the current state.
        ready_check: Returns True when the state is the one we wait for.
        max_attempts: Number of polls before giving up.
        interval: Seconds to sleep between polls.
        description: Description for log and error messages.
        log: Bound logger; defaults to the module logger.

    Returns:
        The first state that passed ready_check.

    Raises:
        PollExhausted: If max_attempts polls never passed ready_check.
    """
    log = log or logger.bind(component="wait")

    for attempt in range(1, max_attempts + 1):
        result = await poll_fn()
        if ready_check(result):
            return result

        if attempt < max_attempts:
            log.info(
                "{description}: not ready (attempt {attempt}/{max}), waiting {interval}s...",
                description=description, attempt=attempt, max=max_attempts, interval=interval,
            )
            await asyncio.sleep(interval)

    raise PollExhausted(description, max_attempts)
