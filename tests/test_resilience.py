"""
Tests for retry_with_backoff.
"""

import logging

import pytest

from shared_canvas.exceptions import FatalStoreError, StoreErrorKind, TransientStoreError, ValidationError
from shared_canvas.resilience import RetryConfig, backoff_delay, is_retryable, retry_with_backoff

FAST = RetryConfig(max_retries=2, backoff_base=0.0)


class Flaky:
    def __init__(self, failures: list[Exception]):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return value


class TestIsRetryable:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (TransientStoreError(StoreErrorKind.TOO_MANY_REQUESTS), True),
            (FatalStoreError(StoreErrorKind.GONE), True),
            (FatalStoreError(StoreErrorKind.NOT_FOUND), False),
            (ConnectionError("reset"), True),
            (ValidationError("color", "out of range"), False),
        ],
    )
    def test_classification(self, exc, expected):
        assert is_retryable(exc, RetryConfig()) is expected


class TestBackoffDelay:
    def test_exponential_and_capped(self):
        config = RetryConfig(backoff_base=1.0, backoff_max=5.0)
        assert [backoff_delay(RuntimeError(), n, config) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_server_retry_after_wins(self):
        exc = TransientStoreError(StoreErrorKind.TOO_MANY_REQUESTS, retry_after=0.25)
        assert backoff_delay(exc, 3, RetryConfig()) == 0.25


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_recovers_from_transient_failures(self, caplog):
        fn = Flaky([ConnectionError("reset"), TimeoutError()])

        with caplog.at_level(logging.INFO, logger="shared_canvas.resilience"):
            assert await retry_with_backoff(fn, "ok", config=FAST, context_msg="chunk 1/1") == "ok"

        assert fn.calls == 3
        assert all(record.operation == "chunk 1/1" for record in caplog.records)
        assert caplog.records[-1].attempt == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_at_once(self):
        fn = Flaky([ValidationError("color", "out of range")])

        with pytest.raises(ValidationError):
            await retry_with_backoff(fn, "ok", config=FAST)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_last_error_raised_when_exhausted(self):
        fn = Flaky([ConnectionError(str(n)) for n in range(5)])

        with pytest.raises(ConnectionError, match="2"):
            await retry_with_backoff(fn, "ok", config=FAST)
        assert fn.calls == 3
