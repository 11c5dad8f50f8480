"""Provider status vocabulary and the derived subscription status engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

PROVIDER_ACTIVE = "ACTIVE"
PROVIDER_SUSPENDED = "SUSPENDED"
PROVIDER_CANCELLED = "CANCELLED"
PROVIDER_EXPIRED = "EXPIRED"

ONE_DAY = timedelta(days=1)


class LifecycleStatus(str, Enum):
    """Closed set of locally meaningful subscription states."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SubscriptionLike(Protocol):
    """Fields the derivation engine reads; satisfied by the Subscription model."""

    status: str
    current_period_end: datetime | None
    next_billing_time: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    failed_payment_count: int | None


@dataclass(frozen=True)
class DerivedStatus:
    """UI-facing indicators recomputed on every read."""

    lifecycle: LifecycleStatus
    is_active: bool
    is_cancelled: bool
    is_expired: bool | None
    has_failed_payments: bool
    days_until_renewal: int | None
    days_until_expiry: int | None
    risk_level: RiskLevel
    should_show_renewal_notice: bool
    should_show_cancellation_notice: bool
    should_show_expired_notice: bool

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["lifecycle"] = self.lifecycle.value
        payload["risk_level"] = self.risk_level.value
        return payload


def normalize_failure_count(value: Any) -> int:
    """Coerce a stored failure counter to a non-negative int."""
    try:
        count = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


def classify_status(raw_status: str | None, failed_payment_count: Any = 0) -> LifecycleStatus:
    """Map the provider's open status string onto ``LifecycleStatus``."""
    status = (raw_status or "").strip().upper()
    if status == PROVIDER_ACTIVE:
        if normalize_failure_count(failed_payment_count) > 0:
            return LifecycleStatus.PAST_DUE
        return LifecycleStatus.ACTIVE
    if status == PROVIDER_SUSPENDED:
        return LifecycleStatus.SUSPENDED
    if status in (PROVIDER_CANCELLED, PROVIDER_EXPIRED):
        return LifecycleStatus.CANCELLED
    return LifecycleStatus.UNKNOWN


def risk_level(failed_payment_count: Any) -> RiskLevel:
    count = normalize_failure_count(failed_payment_count)
    if count >= 2:
        return RiskLevel.HIGH
    if count >= 1:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until(target: datetime | None, now: datetime) -> int | None:
    """Whole days until ``target``, rounded up; None when the date is unknown."""
    target = ensure_utc(target)
    if target is None:
        return None
    return math.ceil((target - ensure_utc(now)) / ONE_DAY)


def derive_status(record: SubscriptionLike, now: datetime) -> DerivedStatus:
    """Compute the derived status for ``record`` at ``now``. Never raises."""
    now = ensure_utc(now)
    status = (record.status or "").upper()
    failures = normalize_failure_count(record.failed_payment_count)
    period_end = ensure_utc(record.current_period_end)
    cancel_at_period_end = bool(record.cancel_at_period_end)

    is_expired = now > period_end if period_end is not None else None
    return DerivedStatus(
        lifecycle=classify_status(status, failures),
        is_active=status == PROVIDER_ACTIVE,
        is_cancelled=cancel_at_period_end or record.cancelled_at is not None,
        is_expired=is_expired,
        has_failed_payments=failures > 0,
        days_until_renewal=days_until(record.next_billing_time, now),
        days_until_expiry=days_until(period_end, now),
        risk_level=risk_level(failures),
        should_show_renewal_notice=status == PROVIDER_ACTIVE and not cancel_at_period_end,
        should_show_cancellation_notice=(
            cancel_at_period_end and period_end is not None and now < period_end
        ),
        should_show_expired_notice=bool(is_expired) and status != PROVIDER_CANCELLED,
    )
