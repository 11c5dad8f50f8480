"""Translate PayPal subscription payloads into local record updates."""

from __future__ import annotations

import calendar
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from billsync.services.subscriptions.status import (
    PROVIDER_ACTIVE,
    PROVIDER_CANCELLED,
    PROVIDER_SUSPENDED,
    ensure_utc,
    normalize_failure_count,
)

logger = logging.getLogger(__name__)

PLAN_PRO = "pro"
PLAN_STARTER = "starter"
DEFAULT_PRO_MARKER = "PRO"


@dataclass(frozen=True)
class SubscriptionUpdate:
    """Fields written to the ``subscriptions`` row on every sync."""

    status: str
    plan_type: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    next_billing_time: datetime | None
    failed_payment_count: int
    last_payment_amount: float | None
    last_payment_date: datetime | None
    billing_cycles: list[dict[str, Any]] | None
    cycle_count: int | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    synced_at: datetime

    def as_fields(self) -> dict[str, Any]:
        return asdict(self)

    def as_payload(self) -> dict[str, Any]:
        return _jsonable(self.as_fields())


@dataclass(frozen=True)
class SettingsProjection:
    """Denormalized copy written onto ``user_settings``."""

    plan: str
    subscription_expiry: datetime | None
    payment_status: str
    subscription_status: str
    auto_renew: bool
    last_payment_date: datetime | None
    synced_at: datetime

    def as_fields(self) -> dict[str, Any]:
        return asdict(self)

    def as_payload(self) -> dict[str, Any]:
        return _jsonable(self.as_fields())


def format_timestamp(value: datetime | None) -> str | None:
    """Render UTC timestamps with millisecond precision and a ``Z`` suffix."""
    value = ensure_utc(value)
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider RFC 3339 timestamp; unparseable values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("subscription.mapping.bad_timestamp", extra={"value": str(value)[:64]})
        return None


def plan_type_from_plan_id(plan_id: str | None, pro_marker: str = DEFAULT_PRO_MARKER) -> str:
    """Substring match on the plan id; anything without the marker is starter."""
    if isinstance(plan_id, str) and pro_marker and pro_marker in plan_id:
        return PLAN_PRO
    return PLAN_STARTER


def _shift_months(value: datetime, months: int) -> datetime:
    # Days past the end of the target month roll forward into the next one
    # (Mar 31 minus one month is Mar 3 in a non-leap year).
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    days_in_month = calendar.monthrange(year, month)[1]
    if value.day <= days_in_month:
        return value.replace(year=year, month=month)
    first_of_month = value.replace(year=year, month=month, day=1)
    return first_of_month + timedelta(days=value.day - 1)


def derive_billing_period(next_billing_time: datetime) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the month ending the day before ``next_billing_time``."""
    next_billing_time = ensure_utc(next_billing_time)
    period_end = (next_billing_time - timedelta(days=1)).replace(
        hour=23, minute=59, second=59, microsecond=999000
    )
    period_start = (_shift_months(period_end, -1) + timedelta(days=1)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return period_start, period_end


def _parse_amount(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("subscription.mapping.bad_amount", extra={"value": str(value)[:32]})
        return None


def _mapping_field(parent: dict[str, Any], key: str) -> dict[str, Any]:
    """Nested provider objects of the wrong shape are treated as absent."""
    value = parent.get(key)
    if value is None or isinstance(value, dict):
        return value or {}
    logger.warning(
        "subscription.mapping.unexpected_shape",
        extra={"field": key, "type": type(value).__name__},
    )
    return {}


def map_provider_subscription(
    payload: dict[str, Any],
    *,
    now: datetime,
    pro_marker: str = DEFAULT_PRO_MARKER,
    cancelled_since: datetime | None = None,
) -> SubscriptionUpdate:
    """Map a PayPal ``GET /v1/billing/subscriptions/{id}`` body onto local fields.

    ``cancelled_since`` is the cancellation time already on record; it is kept so
    repeated syncs of a cancelled subscription write the same ``cancelled_at``.
    """
    status = str(payload.get("status") or "")
    billing_info = _mapping_field(payload, "billing_info")
    last_payment = _mapping_field(billing_info, "last_payment")
    amount = _mapping_field(last_payment, "amount")
    cycle_executions = billing_info.get("cycle_executions")
    if not isinstance(cycle_executions, list) or not cycle_executions:
        cycle_executions = None

    next_billing_time = parse_timestamp(billing_info.get("next_billing_time"))
    if next_billing_time is not None:
        period_start, period_end = derive_billing_period(next_billing_time)
    else:
        period_start, period_end = parse_timestamp(payload.get("start_time")), None

    cancelled = status == PROVIDER_CANCELLED
    return SubscriptionUpdate(
        status=status,
        plan_type=plan_type_from_plan_id(payload.get("plan_id"), pro_marker),
        current_period_start=period_start,
        current_period_end=period_end,
        next_billing_time=next_billing_time,
        failed_payment_count=normalize_failure_count(billing_info.get("failed_payments_count")),
        last_payment_amount=_parse_amount(amount.get("value")),
        last_payment_date=parse_timestamp(last_payment.get("time")),
        billing_cycles=cycle_executions,
        cycle_count=len(cycle_executions) if cycle_executions else None,
        # TODO: detect scheduled-but-not-yet-effective cancellations once PayPal's
        # status model for them is confirmed; only an exact CANCELLED counts today.
        cancel_at_period_end=cancelled,
        cancelled_at=ensure_utc(cancelled_since or now) if cancelled else None,
        synced_at=ensure_utc(now),
    )


def payment_status_for(status: str) -> str:
    if status == PROVIDER_ACTIVE:
        return "active"
    if status == PROVIDER_SUSPENDED:
        return "failed"
    return "cancelled"


def build_settings_projection(update: SubscriptionUpdate) -> SettingsProjection:
    return SettingsProjection(
        plan=update.plan_type,
        subscription_expiry=update.current_period_end,
        payment_status=payment_status_for(update.status),
        subscription_status=update.status.lower(),
        auto_renew=update.status == PROVIDER_ACTIVE and not update.cancel_at_period_end,
        last_payment_date=update.last_payment_date,
        synced_at=update.synced_at,
    )


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return {
        key: format_timestamp(value) if isinstance(value, datetime) else value
        for key, value in fields.items()
    }
