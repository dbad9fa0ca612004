"""
Tests for write admission and chunked append.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from shared_canvas.coordinator import WriteCoordinator, raise_for_rejection
from shared_canvas.exceptions import (
    AuthenticationError,
    BatchTooLargeError,
    ConcurrencyConflictError,
    OutOfBoundsError,
    PartialAppendError,
    RateLimitedError,
    StoreError,
    StoreErrorKind,
    TransientStoreError,
    ValidationError,
)
from shared_canvas.models import ThrottleReason
from shared_canvas.stores import InMemoryUserStore

from conftest import pixel


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


class RacingUserStore(InMemoryUserStore):
    """Another instance admits a write for the same user just before our replace."""

    def __init__(self):
        super().__init__()
        self.raced = False

    async def replace(self, user):
        if not self.raced:
            self.raced = True
            winner = self._load(user.id)
            winner.last_insert = user.last_insert
            self.put(winner)
        return await super().replace(user)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_first_pixel_accepted_and_stamped(self, coordinator, change_log, users, now):
        result = await coordinator.submit_batch("user-1", None, [pixel(2, 3, 7)], now=now)

        assert result.accepted
        assert result.reason == ThrottleReason.OK
        assert result.timestamp == now
        assert result.report.items_written == 1

        [written] = change_log.items
        assert (written.x, written.y, written.color) == (2, 3, 7)
        assert written.user_id == "user-1"
        assert written.last_updated == now

        stored = await users.get_or_create("user-1")
        assert stored.last_insert == now

    @pytest.mark.asyncio
    async def test_second_pixel_inside_cooldown_rate_limited(self, coordinator, change_log, now):
        await coordinator.submit_batch("user-1", None, [pixel()], now=now)
        result = await coordinator.submit_batch("user-1", None, [pixel()], now=now + timedelta(seconds=10))

        assert not result.accepted
        assert result.reason == ThrottleReason.RATE_LIMITED
        assert result.retry_at == now + timedelta(seconds=30)
        assert len(change_log.entries) == 1

        with pytest.raises(RateLimitedError):
            raise_for_rejection(result, "user-1", 1)

    @pytest.mark.asyncio
    async def test_pixel_after_cooldown_accepted(self, coordinator, change_log, now):
        await coordinator.submit_batch("user-1", None, [pixel()], now=now)
        result = await coordinator.submit_batch("user-1", None, [pixel()], now=now + timedelta(seconds=30))

        assert result.accepted
        assert len(change_log.entries) == 2

    @pytest.mark.asyncio
    async def test_batch_from_non_admin_rejected_without_consuming_cooldown(
        self, coordinator, change_log, users, now
    ):
        result = await coordinator.submit_batch("user-1", "github", [pixel(1, 1), pixel(2, 2)], now=now)

        assert not result.accepted
        assert result.reason == ThrottleReason.BATCH_TOO_LARGE
        assert change_log.entries == []
        assert users.replace_calls == 0

        with pytest.raises(BatchTooLargeError):
            raise_for_rejection(result, "user-1", 2)

        follow_up = await coordinator.submit_batch("user-1", "github", [pixel()], now=now)
        assert follow_up.accepted

    @pytest.mark.asyncio
    async def test_admin_identity_provider_bypasses_limits(self, coordinator, change_log, now):
        pixels = [pixel(x, y) for x in range(8) for y in range(8)]

        first = await coordinator.submit_batch("admin", "aad", pixels, now=now)
        second = await coordinator.submit_batch("admin", "aad", pixels[:3], now=now)

        assert first.accepted and second.accepted
        assert len(change_log.items) == 67

    def test_is_admin(self, coordinator):
        assert coordinator.is_admin("aad")
        assert not coordinator.is_admin("github")
        assert not coordinator.is_admin(None)


class TestBlockedUser:
    @pytest.mark.asyncio
    async def test_blocked_user_gets_silent_success(self, coordinator, change_log, users, caplog):
        users.block("troll")

        with caplog.at_level(logging.INFO, logger="shared_canvas.coordinator"):
            result = await coordinator.submit_batch("troll", None, [pixel()])

        assert result.accepted
        assert result.reason == ThrottleReason.BLOCKED
        assert result.report is None
        assert change_log.entries == []
        assert "troll is blocked" in caplog.text

        raise_for_rejection(result, "troll", 1)

    @pytest.mark.asyncio
    async def test_blocked_admin_writes_nothing(self, coordinator, change_log, users):
        users.block("admin")
        result = await coordinator.submit_batch("admin", "aad", [pixel(), pixel(2, 2)])
        assert result.accepted
        assert change_log.entries == []


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_user_id(self, coordinator):
        with pytest.raises(AuthenticationError):
            await coordinator.submit_batch("", None, [pixel()])

    @pytest.mark.asyncio
    async def test_empty_batch(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.submit_batch("user-1", None, [])

    @pytest.mark.asyncio
    async def test_out_of_bounds_rejected_before_admission(self, coordinator, users, change_log):
        with pytest.raises(OutOfBoundsError):
            await coordinator.submit_batch("user-1", None, [pixel(8, 0)])

        assert users.replace_calls == 0
        assert change_log.entries == []


class TestChunkedAppend:
    @pytest.mark.asyncio
    async def test_large_batch_split_into_chunks(self, users, change_log, canvas_config, fast_retry):
        canvas_config.width = canvas_config.height = 100
        coordinator = WriteCoordinator(users, change_log, canvas_config, retry_config=fast_retry)
        pixels = [pixel(i % 100, i // 100) for i in range(650)]

        result = await coordinator.submit_batch("admin", "aad", pixels)

        assert [len(entry.items) for entry in change_log.entries] == [300, 300, 50]
        assert result.report.chunks_total == 3
        assert result.report.complete
        assert change_log.items[0].user_id == "admin"

    @pytest.mark.asyncio
    async def test_chunk_failure_reports_progress(self, coordinator, change_log):
        coordinator.config.append_chunk_size = 2
        change_log.append_batch = AsyncMock(side_effect=[None, StoreError(StoreErrorKind.OTHER, "boom")])

        with pytest.raises(PartialAppendError) as exc_info:
            await coordinator.append_pixels([pixel(i, 0) for i in range(5)])

        report = exc_info.value.report
        assert report.chunks_total == 3
        assert report.chunks_succeeded == 1
        assert report.items_written == 2
        assert not report.complete

    @pytest.mark.asyncio
    async def test_transient_chunk_failure_retried(self, coordinator, change_log):
        change_log.fail_next_append(TransientStoreError(StoreErrorKind.TOO_MANY_REQUESTS))

        report = await coordinator.append_pixels([pixel()])

        assert report.complete
        assert len(change_log.entries) == 1

    @pytest.mark.asyncio
    async def test_cooldown_consumed_when_append_fails(self, coordinator, change_log, now):
        change_log.fail_next_append(StoreError(StoreErrorKind.OTHER, "down"))

        with pytest.raises(PartialAppendError):
            await coordinator.submit_batch("user-1", None, [pixel()], now=now)

        result = await coordinator.submit_batch("user-1", None, [pixel()], now=now + timedelta(seconds=1))
        assert result.reason == ThrottleReason.RATE_LIMITED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_submits_admit_exactly_one(self, coordinator, change_log, now):
        results = await asyncio.gather(
            *(coordinator.submit_batch("user-1", None, [pixel()], now=now) for _ in range(5))
        )

        assert sum(result.accepted for result in results) == 1
        assert len(change_log.entries) == 1

    @pytest.mark.asyncio
    async def test_lost_compare_and_swap_is_reevaluated(self, change_log, canvas_config, fast_retry, now):
        users = RacingUserStore()
        coordinator = WriteCoordinator(users, change_log, canvas_config, retry_config=fast_retry)

        result = await coordinator.submit_batch("user-1", None, [pixel()], now=now)

        assert not result.accepted
        assert result.reason == ThrottleReason.RATE_LIMITED
        assert change_log.entries == []

    @pytest.mark.asyncio
    async def test_persistent_conflict_gives_up(self, coordinator, users):
        users.replace = AsyncMock(side_effect=ConcurrencyConflictError("user-1"))

        with pytest.raises(ConcurrencyConflictError):
            await coordinator.submit_batch("user-1", None, [pixel()])

        assert users.replace.await_count == 3
