from __future__ import annotations

import asyncio
import copy
from datetime import timedelta

import pytest

from billsync.clients.paypal import PayPalResourceError
from billsync.config import settings
from billsync.models.subscription import Subscription
from billsync.services.subscriptions import audit as audit_module
from billsync.services.subscriptions import sync as sync_module
from billsync.services.subscriptions.errors import (
    SubscriptionNotFoundError,
    SubscriptionPersistenceError,
    SyncConfigurationError,
)
from billsync.services.subscriptions.repositories import InMemorySubscriptionStore
from billsync.services.subscriptions.sync import SubscriptionSyncService
from tests.helpers.metrics_stub import StubMetrics

SUBSCRIPTION_ID = "I-ACTIVE123"
USER_ID = "user-1"


class FakeProvider:
    def __init__(self, payload: dict | None = None, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_subscription(self, subscription_id: str) -> dict:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
            return copy.deepcopy(self.payload)
        finally:
            self.in_flight -= 1


class StepClock:
    def __init__(self, start, step=timedelta(minutes=5)) -> None:
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current = value + self.step
        return value


class FailingSettingsStore(InMemorySubscriptionStore):
    def update_user_settings(self, user_id, fields):
        raise SubscriptionPersistenceError("user_settings unavailable")


class FailingAuditStore(InMemorySubscriptionStore):
    def record_sync_operation(self, entry):
        raise SubscriptionPersistenceError("sync_operations unavailable")


@pytest.fixture
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(sync_module, "metrics", stub)
    monkeypatch.setattr(audit_module, "metrics", stub)
    return stub


def _seed(store: InMemorySubscriptionStore) -> Subscription:
    return store.add_subscription(
        Subscription(
            user_id=USER_ID,
            paypal_subscription_id=SUBSCRIPTION_ID,
            paypal_plan_id="P-PRO-MONTHLY",
            status="APPROVAL_PENDING",
        )
    )


def _without_sync_time(updates: dict) -> dict:
    return {key: value for key, value in updates.items() if key != "synced_at"}


def _service(provider, store, now, **kwargs) -> SubscriptionSyncService:
    return SubscriptionSyncService(provider, store, clock=StepClock(now), **kwargs)


@pytest.mark.asyncio
async def test_sync_overwrites_record_projection_and_audit(
    paypal_active_payload, fixed_now, stub_metrics
):
    store = InMemorySubscriptionStore()
    _seed(store)
    service = _service(FakeProvider(paypal_active_payload), store, fixed_now)

    result = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert result.success is True
    assert result.subscription == paypal_active_payload
    assert result.sync_timestamp == "2024-05-10T12:00:00.000Z"
    assert result.local_updates["status"] == "ACTIVE"
    assert result.local_updates["plan_type"] == "pro"
    assert result.as_response()["success"] is True

    record = store.get_by_provider_id(SUBSCRIPTION_ID)
    assert record.status == "ACTIVE"
    assert record.last_payment_amount == pytest.approx(29.99)

    user_settings = store.get_user_settings(USER_ID)
    assert user_settings.plan == "pro"
    assert user_settings.payment_status == "active"
    assert user_settings.auto_renew is True

    (operation,) = store.list_sync_operations(USER_ID)
    assert operation.operation_type == "paypal_subscription_sync"
    assert operation.sync_result == "success"
    assert operation.paypal_data == paypal_active_payload
    assert operation.local_updates["subscription"] == result.local_updates
    assert operation.local_updates["user_settings"]["payment_status"] == "active"
    assert "subscription.sync.success" in stub_metrics.counters()


@pytest.mark.asyncio
async def test_repeated_sync_is_idempotent_apart_from_timestamps(paypal_active_payload, fixed_now):
    payload = copy.deepcopy(paypal_active_payload)
    payload["status"] = "CANCELLED"
    store = InMemorySubscriptionStore()
    _seed(store)
    service = _service(FakeProvider(payload), store, fixed_now)

    first = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)
    second = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert first.sync_timestamp != second.sync_timestamp
    assert _without_sync_time(first.local_updates) == _without_sync_time(second.local_updates)
    assert second.local_updates["cancelled_at"] == "2024-05-10T12:00:00.000Z"


@pytest.mark.asyncio
async def test_fetch_failure_leaves_every_table_untouched(fixed_now, stub_metrics):
    store = InMemorySubscriptionStore()
    _seed(store)
    provider = FakeProvider(error=PayPalResourceError("Failed to get subscription details: 404"))
    service = _service(provider, store, fixed_now)

    with pytest.raises(PayPalResourceError):
        await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert store.get_by_provider_id(SUBSCRIPTION_ID).status == "APPROVAL_PENDING"
    assert store.get_user_settings(USER_ID) is None
    assert store.list_sync_operations(USER_ID) == []
    failed = [call for call in stub_metrics.calls if call["metric"] == "subscription.sync.failed"]
    assert failed and failed[0]["tags"]["code"] == "PAYPAL_RESOURCE_FAILED"


@pytest.mark.asyncio
async def test_missing_local_row_is_fatal(paypal_active_payload, fixed_now):
    store = InMemorySubscriptionStore()
    service = _service(FakeProvider(paypal_active_payload), store, fixed_now)

    with pytest.raises(SubscriptionNotFoundError):
        await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert store.get_user_settings(USER_ID) is None
    assert store.list_sync_operations(USER_ID) == []


@pytest.mark.asyncio
async def test_settings_write_failure_does_not_fail_sync(
    paypal_active_payload, fixed_now, stub_metrics
):
    store = FailingSettingsStore()
    _seed(store)
    service = _service(FakeProvider(paypal_active_payload), store, fixed_now)

    result = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert result.success is True
    assert result.settings_written is False
    assert result.audit_written is True
    assert store.get_by_provider_id(SUBSCRIPTION_ID).status == "ACTIVE"
    assert "subscription.settings.write_failed" in stub_metrics.counters()


@pytest.mark.asyncio
async def test_audit_write_failure_does_not_fail_sync(
    paypal_active_payload, fixed_now, stub_metrics
):
    store = FailingAuditStore()
    _seed(store)
    service = _service(FakeProvider(paypal_active_payload), store, fixed_now)

    result = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert result.success is True
    assert result.audit_written is False
    assert store.get_user_settings(USER_ID).payment_status == "active"
    assert "subscription.audit.write_failed" in stub_metrics.counters()


@pytest.mark.asyncio
async def test_stale_session_discards_result_without_writes(paypal_active_payload, fixed_now):
    store = InMemorySubscriptionStore()
    _seed(store)
    service = _service(
        FakeProvider(paypal_active_payload), store, fixed_now, is_current=lambda: False
    )

    result = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert result.discarded is True
    assert result.success is False
    assert store.get_by_provider_id(SUBSCRIPTION_ID).status == "APPROVAL_PENDING"
    assert store.list_sync_operations(USER_ID) == []


@pytest.mark.asyncio
async def test_overlapping_syncs_for_one_subscription_are_serialised(
    paypal_active_payload, fixed_now
):
    store = InMemorySubscriptionStore()
    _seed(store)
    provider = FakeProvider(paypal_active_payload)
    service = _service(provider, store, fixed_now)

    results = await asyncio.gather(
        *(service.sync_subscription(SUBSCRIPTION_ID, USER_ID) for _ in range(3))
    )

    assert all(result.success for result in results)
    assert provider.calls == 3
    assert provider.max_in_flight == 1
    assert len(store.list_sync_operations(USER_ID)) == 3


@pytest.mark.asyncio
async def test_malformed_provider_payload_still_syncs(fixed_now):
    store = InMemorySubscriptionStore()
    _seed(store)
    payload = {"id": SUBSCRIPTION_ID, "status": "ACTIVE", "billing_info": ["unexpected"]}
    service = _service(FakeProvider(payload), store, fixed_now)

    result = await service.sync_subscription(SUBSCRIPTION_ID, USER_ID)

    assert result.success is True
    record = store.get_by_provider_id(SUBSCRIPTION_ID)
    assert record.status == "ACTIVE"
    assert record.last_payment_amount is None


@pytest.mark.asyncio
async def test_subscription_locks_are_released_after_sync(paypal_active_payload, fixed_now):
    store = InMemorySubscriptionStore()
    _seed(store)
    service = _service(FakeProvider(paypal_active_payload), store, fixed_now)

    await asyncio.gather(
        *(service.sync_subscription(SUBSCRIPTION_ID, USER_ID) for _ in range(3))
    )

    assert SUBSCRIPTION_ID not in service._locks


def test_from_settings_refuses_to_start_without_secrets(monkeypatch):
    monkeypatch.setattr(settings, "paypal_client_id", None)
    monkeypatch.setattr(settings, "paypal_client_secret", "secret")
    monkeypatch.setattr(settings, "database_url", None)

    with pytest.raises(SyncConfigurationError) as exc_info:
        SubscriptionSyncService.from_settings(store=InMemorySubscriptionStore())

    assert exc_info.value.code == "SYNC_CONFIG_MISSING"
    assert exc_info.value.missing == ["PAYPAL_CLIENT_ID", "DATABASE_URL"]
    assert "PAYPAL_CLIENT_ID" in str(exc_info.value)
