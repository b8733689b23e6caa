"""
Tests for bounded polling.

Verifies:
- The first truthy result is returned
- Exceptions and falsy results count as failed attempts
- Budget exhaustion raises PollingTimeout carrying the last error
- Setting the stop event aborts the wait early
"""

import asyncio
import time

import pytest

from devspace.utils.polling import PollingCancelled, PollingTimeout, poll_until


@pytest.mark.unit
class TestPollUntil:

    @pytest.mark.asyncio
    async def test_returns_first_truthy_result(self):
        calls = []

        async def check():
            calls.append(1)
            return "ready" if len(calls) == 3 else None

        result = await poll_until(check, interval=0.01, timeout=5)

        assert result == "ready"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exceptions_are_retried(self):
        calls = []

        async def check():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("not yet")
            return True

        assert await poll_until(check, interval=0.01, timeout=5) is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_carries_last_error(self):
        async def check():
            raise ConnectionError("backend unreachable")

        with pytest.raises(PollingTimeout) as exc_info:
            await poll_until(check, interval=0.01, timeout=0.05, description="backend")

        assert "backend" in str(exc_info.value)
        assert isinstance(exc_info.value.last_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_timeout_on_falsy_results(self):
        async def check():
            return False

        with pytest.raises(PollingTimeout) as exc_info:
            await poll_until(check, interval=0.01, timeout=0.05)

        assert exc_info.value.last_error is None

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_wait(self):
        stop_event = asyncio.Event()

        async def check():
            return False

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop_event.set()

        started = time.monotonic()
        stopper = asyncio.create_task(stop_soon())
        with pytest.raises(PollingCancelled):
            await poll_until(check, interval=10, timeout=60, stop_event=stop_event)
        await stopper

        # Interrupted long before the 10s interval elapsed
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_task_cancelled_during_check_is_not_retried(self):
        calls = []
        in_check = asyncio.Event()

        async def check():
            calls.append(1)
            in_check.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(poll_until(check, interval=0.01, timeout=0.6))
        await in_check.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) == 1
