"""
Bounded polling with an interruptible wait.

Every wait in the bootstrap and deployment stages goes through poll_until():
the budget is measured against monotonic elapsed time (tenacity's
stop_after_delay), and the sleep between attempts waits on an asyncio.Event
so a caller can abort a wait early instead of sleeping it out.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

logger = logging.getLogger(__name__)


class PollingTimeout(Exception):
    """The polling budget was exhausted before the check succeeded."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class PollingCancelled(Exception):
    """The stop event was set while waiting between attempts."""


def _interruptible_sleep(stop_event: asyncio.Event, description: str):
    async def _sleep(seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise PollingCancelled(f"Stopped waiting for {description}")

    return _sleep


async def poll_until(
    check: Callable[[], Awaitable[Any]],
    *,
    interval: float,
    timeout: float,
    description: str = "condition",
    stop_event: Optional[asyncio.Event] = None,
) -> Any:
    """
    Call `check` until it returns a truthy value.

    A check that raises counts as a failed attempt; the exception is kept and
    attached to the PollingTimeout raised once `timeout` seconds have passed.

    Args:
        check: Coroutine function returning a truthy value on success
        interval: Seconds to wait between attempts
        timeout: Overall budget in seconds (monotonic elapsed time)
        description: Used in log and error messages
        stop_event: Setting this event aborts the wait with PollingCancelled

    Returns:
        The first truthy value returned by `check`
    """
    if stop_event is None:
        stop_event = asyncio.Event()

    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=(
            # CancelledError and other BaseExceptions end the poll immediately
            retry_if_exception(lambda e: isinstance(e, Exception) and not isinstance(e, PollingCancelled))
            | retry_if_result(lambda result: not result)
        ),
        sleep=_interruptible_sleep(stop_event, description),
    )

    try:
        return await retrying(check)
    except RetryError as e:
        last_attempt = e.last_attempt
        last_error = last_attempt.exception() if last_attempt.failed else None
        logger.debug(f"[POLL] Gave up waiting for {description} after {timeout}s: {last_error}")
        raise PollingTimeout(
            f"Timed out after {timeout:g}s waiting for {description}",
            last_error=last_error,
        ) from last_error
