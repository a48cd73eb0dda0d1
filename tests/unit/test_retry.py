"""Unit tests for bounded store retries."""

import asyncio

import pytest

from tutoring_scheduler.core.exceptions import StoreRetriesExhausted, StoreUnavailable, ValidationError
from tutoring_scheduler.core.retry import call_with_deadline, read_with_retry, retry_store_call


class Operation:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestRetryStoreCall:
    async def test_returns_first_success(self):
        operation = Operation(["ok"])

        assert await retry_store_call(operation, attempts=3, base_delay=0) == "ok"
        assert operation.calls == 1

    async def test_retries_store_unavailable(self):
        operation = Operation([StoreUnavailable("down"), StoreUnavailable("down"), "ok"])

        assert await retry_store_call(operation, attempts=3, base_delay=0) == "ok"
        assert operation.calls == 3

    async def test_exhaustion_chains_last_error(self):
        last = StoreUnavailable("still down")
        operation = Operation([StoreUnavailable("down"), last])

        with pytest.raises(StoreRetriesExhausted) as exc_info:
            await retry_store_call(operation, attempts=2, base_delay=0)

        assert exc_info.value.attempts == 2
        assert exc_info.value.__cause__ is last
        assert operation.calls == 2

    async def test_other_errors_not_retried(self):
        operation = Operation([ValidationError("bad"), "ok"])

        with pytest.raises(ValidationError):
            await retry_store_call(operation, attempts=3, base_delay=0)
        assert operation.calls == 1

    async def test_backoff_is_capped(self, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr("tutoring_scheduler.core.retry.asyncio.sleep", fake_sleep)
        operation = Operation([StoreUnavailable("down")] * 4 + ["ok"])

        await retry_store_call(operation, attempts=5, base_delay=0.1, max_delay=0.3)

        assert delays == pytest.approx([0.1, 0.2, 0.3, 0.3])

    async def test_requires_an_attempt(self):
        with pytest.raises(ValueError):
            await retry_store_call(Operation(["ok"]), attempts=0)

    def test_store_unavailable_is_retryable(self):
        assert StoreUnavailable.retryable
        assert not ValidationError.retryable


async def never_returns():
    await asyncio.sleep(3600)


class TestCallWithDeadline:
    async def test_returns_result_in_time(self):
        assert await call_with_deadline(Operation(["ok"]), timeout_seconds=1.0) == "ok"

    async def test_missed_deadline_is_store_unavailable(self):
        with pytest.raises(StoreUnavailable, match="slow read timed out") as exc_info:
            await call_with_deadline(never_returns, timeout_seconds=0.01, description="slow read")

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)


class TestReadWithRetry:
    async def test_each_attempt_gets_a_deadline(self, short_timeout_settings):
        calls = []

        async def hanging_read():
            calls.append(1)
            await asyncio.sleep(3600)

        with pytest.raises(StoreRetriesExhausted) as exc_info:
            await read_with_retry(hanging_read, short_timeout_settings, "hanging read")

        assert len(calls) == short_timeout_settings.STORE_RETRY_ATTEMPTS
        assert isinstance(exc_info.value.__cause__, StoreUnavailable)

    async def test_recovers_after_a_timeout(self, short_timeout_settings):
        outcomes = [never_returns, None]

        async def read():
            step = outcomes.pop(0)
            if step is not None:
                await step()
            return "ok"

        assert await read_with_retry(read, short_timeout_settings, "read") == "ok"
        assert outcomes == []
