"""
Tests for per-user admission rules.
"""

from datetime import timedelta

import pytest

from shared_canvas.models import ThrottleReason, UserState
from shared_canvas.throttle import ThrottleGate

from conftest import NOW


def make_user(last_insert_ago: float = 3600, is_admin: bool = False, is_blocked: bool = False) -> UserState:
    return UserState(
        id="user-1",
        last_insert=NOW - timedelta(seconds=last_insert_ago),
        is_admin=is_admin,
        is_blocked=is_blocked,
    )


class TestCooldown:
    """Non-admins wait throttle_seconds between accepted inserts."""

    def test_new_user_is_eligible_immediately(self):
        gate = ThrottleGate(30)
        decision = gate.evaluate(UserState.new("fresh", NOW), 1, NOW)
        assert decision.allow
        assert decision.reason == ThrottleReason.OK

    def test_insert_inside_cooldown_is_rate_limited(self):
        gate = ThrottleGate(30)
        user = make_user(last_insert_ago=10)

        decision = gate.evaluate(user, 1, NOW)

        assert not decision.allow
        assert decision.reason == ThrottleReason.RATE_LIMITED
        assert decision.retry_at == NOW + timedelta(seconds=20)

    def test_insert_exactly_at_cooldown_end_is_allowed(self):
        gate = ThrottleGate(30)
        user = make_user(last_insert_ago=30)
        assert gate.evaluate(user, 1, NOW).allow

    def test_thirty_second_sequence(self):
        gate = ThrottleGate(30)
        user = make_user()

        assert gate.evaluate(user, 1, NOW).allow
        user.last_insert = NOW

        assert gate.evaluate(user, 1, NOW + timedelta(seconds=10)).reason == ThrottleReason.RATE_LIMITED
        assert gate.evaluate(user, 1, NOW + timedelta(seconds=29)).reason == ThrottleReason.RATE_LIMITED
        assert gate.evaluate(user, 1, NOW + timedelta(seconds=30)).allow

    def test_per_call_override(self):
        gate = ThrottleGate(30)
        user = make_user(last_insert_ago=10)
        assert gate.evaluate(user, 1, NOW, throttle_seconds=5).allow

    def test_negative_cooldown_rejected(self):
        with pytest.raises(ValueError):
            ThrottleGate(-1)


class TestBatchSize:
    def test_non_admin_batch_rejected(self):
        gate = ThrottleGate(30)
        decision = gate.evaluate(make_user(), 2, NOW)
        assert decision.reason == ThrottleReason.BATCH_TOO_LARGE
        assert decision.retry_at is None

    def test_batch_checked_before_cooldown(self):
        gate = ThrottleGate(30)
        decision = gate.evaluate(make_user(last_insert_ago=1), 5, NOW)
        assert decision.reason == ThrottleReason.BATCH_TOO_LARGE


class TestAdminAndBlocked:
    def test_admin_bypasses_batch_and_cooldown(self):
        gate = ThrottleGate(30)
        admin = make_user(last_insert_ago=0, is_admin=True)
        assert gate.evaluate(admin, 500, NOW).allow

    def test_blocked_user_rejected_as_blocked(self):
        gate = ThrottleGate(30)
        decision = gate.evaluate(make_user(is_blocked=True), 1, NOW)
        assert not decision.allow
        assert decision.reason == ThrottleReason.BLOCKED

    def test_blocked_admin_still_blocked(self):
        gate = ThrottleGate(30)
        decision = gate.evaluate(make_user(is_admin=True, is_blocked=True), 1, NOW)
        assert decision.reason == ThrottleReason.BLOCKED
