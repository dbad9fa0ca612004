"""
Write admission and durable append of pixel batches.

Flow per submission:

1. Validate the batch (non-empty, every coordinate on the board).
2. Under the per-user lock: read UserState, evaluate the throttle gate,
   and on OK persist ``last_insert = now`` with an etag compare-and-swap.
   A lost CAS means another instance admitted a write for this user
   first; the state is re-read and re-evaluated.
3. Append the stamped pixels to the change log in chunks.

Blocked users get an accepted result with nothing written.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Sequence
from datetime import UTC, datetime

from .config import CanvasConfig
from .exceptions import (
    AuthenticationError,
    BatchTooLargeError,
    ConcurrencyConflictError,
    OutOfBoundsError,
    PartialAppendError,
    RateLimitedError,
    ValidationError,
)
from .models import AppendReport, Pixel, SubmitResult, ThrottleDecision, ThrottleReason
from .protocol import OrderedLogClient, UserStore
from .resilience import RetryConfig, retry_with_backoff
from .throttle import ThrottleGate

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


def raise_for_rejection(result: SubmitResult, user_id: str, batch_size: int) -> None:
    """Turn a rejected SubmitResult into the matching ThrottleRejection.

    Accepted results (including silent drops for blocked users) pass through.
    """
    if result.accepted:
        return
    if result.reason == ThrottleReason.BATCH_TOO_LARGE:
        raise BatchTooLargeError(user_id, batch_size)
    if result.reason == ThrottleReason.RATE_LIMITED:
        raise RateLimitedError(user_id, result.retry_at)


class WriteCoordinator:
    """Admits pixel batches and appends them to the change log."""

    def __init__(
        self,
        users: UserStore,
        log: OrderedLogClient,
        config: CanvasConfig | None = None,
        gate: ThrottleGate | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.users = users
        self.log = log
        self.config = config or CanvasConfig()
        self.gate = gate or ThrottleGate(self.config.throttle_seconds)
        self.retry_config = retry_config or RetryConfig()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def is_admin(self, identity_provider: str | None) -> bool:
        """Only one identity provider grants admin rights."""
        return identity_provider == self.config.admin_identity_provider

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def validate(self, pixels: Sequence[Pixel]) -> None:
        """Reject empty batches and off-board coordinates.

        Raises:
            ValidationError: If the batch is empty
            OutOfBoundsError: If any pixel is outside the board
        """
        if not pixels:
            raise ValidationError("pixels", "batch must contain at least one pixel")
        for pixel in pixels:
            if not (0 <= pixel.x < self.config.width and 0 <= pixel.y < self.config.height):
                raise OutOfBoundsError(pixel.x, pixel.y, self.config.width, self.config.height)

    async def submit_batch(
        self,
        user_id: str,
        identity_provider: str | None,
        pixels: Sequence[Pixel],
        now: datetime | None = None,
    ) -> SubmitResult:
        """Validate, admit and append one batch.

        Args:
            user_id: Trusted user id from the gateway
            identity_provider: Trusted identity provider claim
            pixels: Pixels as submitted (coordinates and color)
            now: Submission time (default: current UTC time)

        Returns:
            SubmitResult; rejected results carry RATE_LIMITED or BATCH_TOO_LARGE

        Raises:
            AuthenticationError: If ``user_id`` is empty
            ValidationError: If the batch is malformed
            PartialAppendError: If the log append failed (possibly after
                some chunks were written)
        """
        if not user_id:
            raise AuthenticationError("missing user id")
        now = now or datetime.now(UTC)
        self.validate(pixels)

        async with self._lock_for(user_id):
            decision = await self._admit(user_id, identity_provider, len(pixels), now)

        if decision.reason == ThrottleReason.BLOCKED:
            logger.info(f"User {user_id} is blocked.", extra={"user_id": user_id})
            return SubmitResult(accepted=True, timestamp=now, reason=ThrottleReason.BLOCKED)

        if not decision.allow:
            logger.debug(
                "Pixel batch rejected",
                extra={"user_id": user_id, "reason": decision.reason.value, "batch_size": len(pixels)},
            )
            return SubmitResult(
                accepted=False, timestamp=now, reason=decision.reason, retry_at=decision.retry_at
            )

        report = await self.append_pixels([pixel.stamped(user_id, now) for pixel in pixels])
        return SubmitResult(accepted=True, timestamp=now, report=report)

    async def _admit(
        self,
        user_id: str,
        identity_provider: str | None,
        batch_size: int,
        now: datetime,
    ) -> ThrottleDecision:
        """Evaluate and, on OK, persist the new last-insert time atomically."""
        for attempt in range(MAX_CAS_ATTEMPTS):
            user = await self.users.get_or_create(user_id)
            user.is_admin = self.is_admin(identity_provider)

            decision = self.gate.evaluate(user, batch_size, now)
            if not decision.allow:
                return decision

            user.last_insert = now
            try:
                await self.users.replace(user)
                return decision
            except ConcurrencyConflictError:
                logger.info(
                    f"Concurrent update of user {user_id}, re-evaluating",
                    extra={"user_id": user_id, "attempt": attempt + 1},
                )

        raise ConcurrencyConflictError(user_id)

    async def append_pixels(self, pixels: Sequence[Pixel]) -> AppendReport:
        """Append pixels as sequential chunks of at most ``append_chunk_size``.

        Each chunk is retried on transient store errors. Chunks written
        before a failure stay written.

        Raises:
            PartialAppendError: If a chunk could not be written
        """
        size = self.config.append_chunk_size
        chunks = [list(pixels[i : i + size]) for i in range(0, len(pixels), size)]
        report = AppendReport(chunks_total=len(chunks))

        for index, chunk in enumerate(chunks):
            try:
                await retry_with_backoff(
                    self.log.append_batch,
                    chunk,
                    config=self.retry_config,
                    context_msg=f"chunk {index + 1}/{len(chunks)}",
                )
            except Exception as e:
                logger.error(
                    f"Pixel append failed after {report.chunks_succeeded}/{report.chunks_total} chunks",
                    extra={"items_written": report.items_written},
                )
                raise PartialAppendError(report, e) from e
            report.chunks_succeeded += 1
            report.items_written += len(chunk)

        return report
