from __future__ import annotations

from datetime import timedelta

import pytest

from billsync.services.subscriptions.grace import (
    NoticeKind,
    build_payment_notice,
    cancellation_message,
    estimate_next_retries,
    failure_risk_message,
    is_in_grace_period,
    next_retry_message,
    remaining_attempts,
)


@pytest.mark.parametrize(
    ("count", "expected"), [(0, False), (1, True), (2, True), (3, False), (7, False), (None, False)]
)
def test_grace_period_boundary(count, expected):
    assert is_in_grace_period(count) is expected


def test_remaining_attempts_is_floored_at_zero():
    assert remaining_attempts(0) == 3
    assert remaining_attempts(1) == 2
    assert remaining_attempts(3) == 0
    assert remaining_attempts(5) == 0


def test_no_failures_produces_no_notice(fixed_now):
    notice = build_payment_notice(0, fixed_now + timedelta(days=20), fixed_now)

    assert notice.kind is NoticeKind.NONE
    assert notice.visible is False
    assert notice.next_retries == []


def test_single_failure_lists_protections_and_two_retry_estimates(fixed_now):
    period_end = fixed_now + timedelta(days=12)

    notice = build_payment_notice(1, period_end, fixed_now, plan_type="pro")

    assert notice.kind is NoticeKind.GRACE_PERIOD
    assert notice.is_critical is False
    assert notice.headline == "Payment Grace Period Active"
    assert notice.remaining_attempts == 2
    assert [retry.days for retry in notice.next_retries] == [3, 5]
    assert [retry.date for retry in notice.next_retries] == [
        fixed_now + timedelta(days=3),
        fixed_now + timedelta(days=5),
    ]
    assert notice.protected_capabilities[0] == "Full access to all pro features continues"
    assert notice.protected_capabilities[-1].endswith("(12 days)")
    assert notice.days_until_expiry == 12


def test_second_failure_is_critical_grace(fixed_now):
    notice = build_payment_notice(2, fixed_now + timedelta(days=5), fixed_now)

    assert notice.kind is NoticeKind.GRACE_PERIOD
    assert notice.is_critical is True
    assert notice.headline == "Critical: Payment Grace Period"
    assert notice.remaining_attempts == 1
    assert [retry.attempt for retry in notice.next_retries] == [3]


def test_exhausted_retries_switch_to_critical_messaging(fixed_now):
    notice = build_payment_notice(3, fixed_now + timedelta(days=5), fixed_now)

    assert notice.kind is NoticeKind.CRITICAL
    assert notice.remaining_attempts == 0
    assert notice.is_critical is True
    assert notice.next_retries == []
    assert notice.protected_capabilities == []
    assert "No further automatic retries" in notice.message
    assert notice.as_dict()["kind"] == "critical"


def test_retry_estimates_are_relative_to_now(fixed_now):
    later = fixed_now + timedelta(hours=6)

    first = estimate_next_retries(1, fixed_now)
    second = estimate_next_retries(1, later)

    assert second[0].date - first[0].date == timedelta(hours=6)
    assert estimate_next_retries(3, fixed_now) == []


def test_failure_handler_copy():
    assert next_retry_message(1) == "Next automatic retry in 1 day"
    assert next_retry_message(2) == "Next automatic retry in 3 days"
    assert next_retry_message(4) == "No more automatic retries scheduled"
    assert "suspended" in failure_risk_message(3)
    assert "multiple times" in failure_risk_message(2)
    assert failure_risk_message(1).startswith("Your last payment failed.")


def test_cancellation_message_mentions_period_end(fixed_now):
    message = cancellation_message(fixed_now + timedelta(days=10), fixed_now)

    assert message == "Your subscription stays active until May 20, 2024, then billing stops."
    assert cancellation_message(None, fixed_now) is None
