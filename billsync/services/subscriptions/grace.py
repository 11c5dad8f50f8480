"""Grace-period banner and retry-estimate policy for failed subscription charges.

PayPal runs its own dunning schedule server-side and does not expose it, so the
retry dates here are estimates overlaid on a fixed day-offset table. Nothing in
this module triggers a retry; reactivation is always user initiated (update the
payment method, then run a manual sync).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Sequence

from billsync.services.subscriptions.status import days_until, ensure_utc, normalize_failure_count

MAX_FAILURES = 3
RETRY_SCHEDULE_DAYS: tuple[int, ...] = (1, 3, 5)


class NoticeKind(str, Enum):
    NONE = "none"
    GRACE_PERIOD = "grace_period"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RetryEstimate:
    attempt: int
    days: int
    date: datetime

    def as_dict(self) -> dict[str, Any]:
        return {"attempt": self.attempt, "days": self.days, "date": self.date.isoformat()}


@dataclass(frozen=True)
class PaymentNotice:
    """What the billing banner should say for the current failure count."""

    kind: NoticeKind
    failed_payment_count: int
    remaining_attempts: int
    is_critical: bool = False
    headline: str | None = None
    message: str | None = None
    protected_capabilities: list[str] = field(default_factory=list)
    next_retries: list[RetryEstimate] = field(default_factory=list)
    access_until: datetime | None = None
    days_until_expiry: int | None = None

    @property
    def visible(self) -> bool:
        return self.kind is not NoticeKind.NONE

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "failed_payment_count": self.failed_payment_count,
            "remaining_attempts": self.remaining_attempts,
            "is_critical": self.is_critical,
            "headline": self.headline,
            "message": self.message,
            "protected_capabilities": list(self.protected_capabilities),
            "next_retries": [retry.as_dict() for retry in self.next_retries],
            "access_until": self.access_until.isoformat() if self.access_until else None,
            "days_until_expiry": self.days_until_expiry,
        }


def is_in_grace_period(failed_payment_count: Any, max_failures: int = MAX_FAILURES) -> bool:
    count = normalize_failure_count(failed_payment_count)
    return 0 < count < max_failures


def remaining_attempts(failed_payment_count: Any, max_failures: int = MAX_FAILURES) -> int:
    return max(max_failures - normalize_failure_count(failed_payment_count), 0)


def estimate_next_retries(
    failed_payment_count: Any,
    now: datetime,
    *,
    schedule: Sequence[int] = RETRY_SCHEDULE_DAYS,
    max_failures: int = MAX_FAILURES,
) -> list[RetryEstimate]:
    """Estimate up to two upcoming retry dates, offset from ``now``."""
    count = normalize_failure_count(failed_payment_count)
    now = ensure_utc(now)
    estimates: list[RetryEstimate] = []
    for index in range(count, min(max_failures, count + 2)):
        if index >= len(schedule) or not schedule[index]:
            continue
        offset = schedule[index]
        estimates.append(
            RetryEstimate(attempt=index + 1, days=offset, date=now + timedelta(days=offset))
        )
    return estimates


def next_retry_message(
    failed_payment_count: Any, *, schedule: Sequence[int] = RETRY_SCHEDULE_DAYS
) -> str:
    """Copy for the failed-payment handler describing the next automatic retry."""
    count = normalize_failure_count(failed_payment_count)
    if 1 <= count <= len(schedule):
        days = schedule[count - 1]
        return f"Next automatic retry in {days} day{'' if days == 1 else 's'}"
    return "No more automatic retries scheduled"


def failure_risk_message(failed_payment_count: Any, max_failures: int = MAX_FAILURES) -> str:
    count = normalize_failure_count(failed_payment_count)
    if count >= max_failures:
        return (
            "Your subscription has been suspended due to multiple payment failures. "
            "Please update your payment method to reactivate."
        )
    if count >= 2:
        return (
            "We've attempted to charge your payment method multiple times. "
            "Please update your payment method to avoid subscription suspension."
        )
    return (
        "Your last payment failed. We'll automatically retry, "
        "but you can also update your payment method now."
    )


def _protected_capabilities(
    plan_type: str, access_until: datetime | None, days_left: int | None
) -> list[str]:
    capabilities = [
        f"Full access to all {plan_type} features continues",
        "No service interruption or data loss",
        "Automatic payment retries continue",
    ]
    if access_until is not None:
        capabilities.append(
            f"Access until {access_until.strftime('%b %d, %Y')} ({max(days_left or 0, 0)} days)"
        )
    return capabilities


def build_payment_notice(
    failed_payment_count: Any,
    current_period_end: datetime | None,
    now: datetime,
    *,
    plan_type: str = "starter",
    max_failures: int = MAX_FAILURES,
    schedule: Sequence[int] = RETRY_SCHEDULE_DAYS,
) -> PaymentNotice:
    """Decide between no banner, a grace-period banner and critical messaging."""
    count = normalize_failure_count(failed_payment_count)
    remaining = remaining_attempts(count, max_failures)
    access_until = ensure_utc(current_period_end)
    days_left = days_until(access_until, now)

    if count == 0:
        return PaymentNotice(
            kind=NoticeKind.NONE, failed_payment_count=0, remaining_attempts=remaining
        )

    if count >= max_failures:
        return PaymentNotice(
            kind=NoticeKind.CRITICAL,
            failed_payment_count=count,
            remaining_attempts=0,
            is_critical=True,
            headline="Subscription at risk of suspension",
            message=(
                f"{failure_risk_message(count, max_failures)} "
                "No further automatic retries are scheduled; once your payment method is "
                "updated, refresh your subscription status."
            ),
            access_until=access_until,
            days_until_expiry=days_left,
        )

    is_critical = count >= 2
    if is_critical:
        headline = "Critical: Payment Grace Period"
        message = (
            "Your subscription is at risk of being suspended. "
            "We will make one more attempt to charge your payment method."
        )
    else:
        headline = "Payment Grace Period Active"
        message = (
            "We've had trouble charging your payment method, "
            "but your service continues while we retry."
        )
    return PaymentNotice(
        kind=NoticeKind.GRACE_PERIOD,
        failed_payment_count=count,
        remaining_attempts=remaining,
        is_critical=is_critical,
        headline=headline,
        message=message,
        protected_capabilities=_protected_capabilities(plan_type, access_until, days_left),
        next_retries=estimate_next_retries(
            count, now, schedule=schedule, max_failures=max_failures
        ),
        access_until=access_until,
        days_until_expiry=days_left,
    )


def cancellation_message(current_period_end: datetime | None, now: datetime) -> str | None:
    """Copy for a subscription that is cancelled but still inside its paid period."""
    period_end = ensure_utc(current_period_end)
    if period_end is None:
        return None
    friendly = period_end.strftime("%b %d, %Y")
    if period_end > ensure_utc(now):
        return f"Your subscription stays active until {friendly}, then billing stops."
    return f"Access ended on {friendly}; billing has stopped."
