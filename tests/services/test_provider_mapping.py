from __future__ import annotations

import copy
from datetime import UTC, datetime, timedelta

import pytest

from billsync.services.subscriptions.mapping import (
    build_settings_projection,
    derive_billing_period,
    format_timestamp,
    map_provider_subscription,
    parse_timestamp,
    plan_type_from_plan_id,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_active_payload_maps_to_local_fields(paypal_active_payload, fixed_now):
    update = map_provider_subscription(paypal_active_payload, now=fixed_now)

    assert update.status == "ACTIVE"
    assert update.plan_type == "pro"
    assert update.next_billing_time == _utc(2024, 6, 2, 10, 0)
    assert update.current_period_start == _utc(2024, 5, 2)
    assert update.current_period_end == _utc(2024, 6, 1, 23, 59, 59, 999000)
    assert update.failed_payment_count == 0
    assert update.last_payment_amount == pytest.approx(29.99)
    assert update.last_payment_date == _utc(2024, 5, 2, 10, 0)
    assert update.cycle_count == 1
    assert update.billing_cycles == paypal_active_payload["billing_info"]["cycle_executions"]
    assert update.cancel_at_period_end is False
    assert update.cancelled_at is None
    assert update.synced_at == fixed_now


def test_payload_uses_millisecond_utc_timestamps(paypal_active_payload, fixed_now):
    payload = map_provider_subscription(paypal_active_payload, now=fixed_now).as_payload()

    assert payload["current_period_end"] == "2024-06-01T23:59:59.999Z"
    assert payload["current_period_start"] == "2024-05-02T00:00:00.000Z"
    assert payload["synced_at"] == "2024-05-10T12:00:00.000Z"


@pytest.mark.parametrize(
    ("next_billing", "expected_start", "expected_end"),
    [
        (_utc(2024, 6, 2, 10), _utc(2024, 5, 2), _utc(2024, 6, 1, 23, 59, 59, 999000)),
        # Mar 31 minus a month overflows past Feb 28 into early March.
        (_utc(2023, 4, 1), _utc(2023, 3, 4), _utc(2023, 3, 31, 23, 59, 59, 999000)),
        (_utc(2024, 3, 31), _utc(2024, 3, 2), _utc(2024, 3, 30, 23, 59, 59, 999000)),
        (_utc(2024, 1, 15), _utc(2023, 12, 15), _utc(2024, 1, 14, 23, 59, 59, 999000)),
    ],
)
def test_billing_period_derivation(next_billing, expected_start, expected_end):
    start, end = derive_billing_period(next_billing)

    assert (start, end) == (expected_start, expected_end)
    assert start < end < next_billing


def test_missing_next_billing_time_falls_back_to_start_time(paypal_active_payload, fixed_now):
    payload = copy.deepcopy(paypal_active_payload)
    payload["billing_info"].pop("next_billing_time")

    update = map_provider_subscription(payload, now=fixed_now)

    assert update.current_period_start == _utc(2024, 3, 2)
    assert update.current_period_end is None
    assert update.next_billing_time is None


def test_cancelled_status_stamps_and_then_preserves_cancelled_at(paypal_active_payload, fixed_now):
    payload = copy.deepcopy(paypal_active_payload)
    payload["status"] = "CANCELLED"

    first = map_provider_subscription(payload, now=fixed_now)
    later = fixed_now + timedelta(minutes=5)
    second = map_provider_subscription(payload, now=later, cancelled_since=first.cancelled_at)

    assert first.cancel_at_period_end is True
    assert first.cancelled_at == fixed_now
    assert second.cancelled_at == fixed_now


def test_only_exact_cancelled_sets_cancel_at_period_end(paypal_active_payload, fixed_now):
    payload = copy.deepcopy(paypal_active_payload)
    payload["status"] = "SUSPENDED"
    payload["billing_info"]["failed_payments_count"] = 3

    update = map_provider_subscription(payload, now=fixed_now)

    assert update.cancel_at_period_end is False
    assert update.cancelled_at is None
    assert update.failed_payment_count == 3


def test_sparse_payload_maps_to_nulls(fixed_now):
    update = map_provider_subscription({"status": "APPROVAL_PENDING"}, now=fixed_now)

    assert update.plan_type == "starter"
    assert update.last_payment_amount is None
    assert update.last_payment_date is None
    assert update.billing_cycles is None
    assert update.cycle_count is None
    assert update.current_period_start is None


@pytest.mark.parametrize(
    "billing_info",
    [
        ["unexpected"],
        {"last_payment": "2024-05-02", "cycle_executions": {"sequence": 1}},
        {"last_payment": {"amount": ["29.99"], "time": "2024-05-02T10:00:00Z"}},
    ],
)
def test_malformed_nested_fields_are_treated_as_absent(billing_info, fixed_now):
    payload = {"status": "ACTIVE", "plan_id": 42, "billing_info": billing_info}

    update = map_provider_subscription(payload, now=fixed_now)

    assert update.status == "ACTIVE"
    assert update.plan_type == "starter"
    assert update.next_billing_time is None
    assert update.failed_payment_count == 0
    assert update.last_payment_amount is None
    assert update.billing_cycles is None
    assert update.cycle_count is None


@pytest.mark.parametrize(
    ("plan_id", "marker", "expected"),
    [
        ("P-PRO-MONTHLY", "PRO", "pro"),
        ("P-5ML4271244454362WXNWU5NQ", "PRO", "starter"),
        ("P-STARTER", "PRO", "starter"),
        (None, "PRO", "starter"),
        ("P-BUSINESS-TIER", "BUSINESS", "pro"),
    ],
)
def test_plan_type_from_plan_id(plan_id, marker, expected):
    assert plan_type_from_plan_id(plan_id, marker) == expected


@pytest.mark.parametrize(
    ("status", "payment_status", "auto_renew"),
    [
        ("ACTIVE", "active", True),
        ("SUSPENDED", "failed", False),
        ("CANCELLED", "cancelled", False),
        ("EXPIRED", "cancelled", False),
    ],
)
def test_settings_projection(paypal_active_payload, fixed_now, status, payment_status, auto_renew):
    payload = copy.deepcopy(paypal_active_payload)
    payload["status"] = status

    projection = build_settings_projection(map_provider_subscription(payload, now=fixed_now))

    assert projection.payment_status == payment_status
    assert projection.auto_renew is auto_renew
    assert projection.subscription_status == status.lower()
    assert projection.plan == "pro"
    assert projection.subscription_expiry == _utc(2024, 6, 1, 23, 59, 59, 999000)


def test_timestamp_helpers():
    assert parse_timestamp("not-a-date") is None
    assert parse_timestamp("") is None
    assert parse_timestamp("2024-05-02T10:00:00Z") == _utc(2024, 5, 2, 10)
    assert format_timestamp(None) is None
    assert format_timestamp(datetime(2024, 5, 2, 10)) == "2024-05-02T10:00:00.000Z"
