"""
Per-user admission control for pixel submissions.

The gate itself is a pure decision function. The state it decides on
(``UserState.last_insert``) is persisted by the caller, who must make
read-evaluate-update atomic per user; see ``WriteCoordinator``.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ..models import ThrottleDecision, ThrottleReason, UserState

DEFAULT_THROTTLE_SECONDS = 30

ADMITTED = ThrottleDecision(allow=True, reason=ThrottleReason.OK)


class ThrottleGate:
    """Decides whether a user's batch is admitted.

    Rules, in order:
    1. Blocked users are rejected with BLOCKED. Callers must still answer
       with the normal success shape so the block is not revealed.
    2. Non-admins may submit only one pixel per batch.
    3. Non-admins must wait ``throttle_seconds`` after their last accepted
       insert.

    Admins skip rules 2 and 3 but not rule 1.
    """

    def __init__(self, throttle_seconds: float = DEFAULT_THROTTLE_SECONDS):
        if throttle_seconds < 0:
            raise ValueError(f"throttle_seconds must be >= 0, got {throttle_seconds}")
        self.throttle_seconds = throttle_seconds

    def next_eligible(self, user: UserState, throttle_seconds: float | None = None) -> datetime:
        """Earliest time a non-admin user may insert again."""
        seconds = self.throttle_seconds if throttle_seconds is None else throttle_seconds
        return user.last_insert + timedelta(seconds=seconds)

    def evaluate(
        self,
        user: UserState,
        batch_size: int,
        now: datetime,
        throttle_seconds: float | None = None,
    ) -> ThrottleDecision:
        """Evaluate one submission.

        Args:
            user: Current state of the submitting user
            batch_size: Number of pixels in the batch
            now: Submission time
            throttle_seconds: Override of the gate's cooldown for this call

        Returns:
            The decision; on OK the caller must set ``user.last_insert = now``
            in the same logical transaction as the write
        """
        if user.is_blocked:
            return ThrottleDecision(allow=False, reason=ThrottleReason.BLOCKED)

        if user.is_admin:
            return ADMITTED

        if batch_size > 1:
            return ThrottleDecision(allow=False, reason=ThrottleReason.BATCH_TOO_LARGE)

        retry_at = self.next_eligible(user, throttle_seconds)
        if now < retry_at:
            return ThrottleDecision(allow=False, reason=ThrottleReason.RATE_LIMITED, retry_at=retry_at)

        return ADMITTED
