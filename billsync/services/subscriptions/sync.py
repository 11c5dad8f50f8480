"""Reconcile local subscription records with PayPal's view of the subscription.

Every run fetches the authoritative subscription from PayPal and overwrites
the local row keyed by the PayPal subscription id. The subscription write is
the only fatal step; the user-settings projection and the audit entry are
best-effort and never fail a sync whose primary write succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from billsync.clients.paypal import PayPalClient, PayPalError
from billsync.config import settings
from billsync.observability.metrics import metrics
from billsync.services.subscriptions.audit import SyncAuditEntry, SyncAuditLog
from billsync.services.subscriptions.errors import (
    SubscriptionPersistenceError,
    SyncConfigurationError,
)
from billsync.services.subscriptions.mapping import (
    DEFAULT_PRO_MARKER,
    SubscriptionUpdate,
    build_settings_projection,
    format_timestamp,
    map_provider_subscription,
)
from billsync.services.subscriptions.repositories import (
    SubscriptionStore,
    build_subscription_store,
    get_subscription_store,
)

logger = logging.getLogger(__name__)

SYNC_SUCCESS_MESSAGE = "Subscription synced successfully"
SYNC_DISCARDED_MESSAGE = "Sync result discarded: session is no longer current"


class SubscriptionProvider(Protocol):
    """Anything that can return a PayPal-shaped subscription payload."""

    async def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class SyncResult:
    success: bool
    message: str
    subscription: dict[str, Any] | None = None
    local_updates: dict[str, Any] | None = None
    sync_timestamp: str | None = None
    discarded: bool = False
    settings_written: bool = False
    audit_written: bool = False

    def as_response(self) -> dict[str, Any]:
        """Body returned by the HTTP sync entry point."""
        return {
            "success": self.success,
            "message": self.message,
            "subscription": self.subscription,
            "local_updates": self.local_updates,
            "sync_timestamp": self.sync_timestamp,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionSyncService:
    """Fetch-then-overwrite reconciliation for a single PayPal subscription."""

    def __init__(
        self,
        client: SubscriptionProvider,
        store: SubscriptionStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        pro_marker: str = DEFAULT_PRO_MARKER,
        is_current: Callable[[], bool] | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._clock = clock
        self._pro_marker = pro_marker
        self._is_current = is_current
        self._audit = SyncAuditLog(store)
        # Entries vanish once no caller holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_settings(
        cls,
        *,
        store: SubscriptionStore | None = None,
        is_current: Callable[[], bool] | None = None,
    ) -> SubscriptionSyncService:
        """Build the service from env settings; refuses to start without secrets."""
        missing = settings.missing_sync_settings()
        if missing:
            raise SyncConfigurationError(missing)
        return cls(
            PayPalClient.from_settings(),
            store or build_subscription_store(),
            pro_marker=settings.pro_plan_marker,
            is_current=is_current,
        )

    @property
    def store(self) -> SubscriptionStore:
        return self._store

    async def aclose(self) -> None:
        close = getattr(self._client, "aclose", None)
        if close is not None:
            await close()

    def _lock_for(self, subscription_id: str) -> asyncio.Lock:
        lock = self._locks.get(subscription_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscription_id] = lock
        return lock

    async def sync_subscription(self, subscription_id: str, user_id: str) -> SyncResult:
        """Run one reconciliation; overlapping calls for the same id are serialised."""
        async with self._lock_for(subscription_id):
            return await self._sync_locked(subscription_id, user_id)

    async def _sync_locked(self, subscription_id: str, user_id: str) -> SyncResult:
        started = time.perf_counter()
        tags = {"operation": "paypal_subscription_sync"}
        context = {"subscription_id": subscription_id, "user_id": user_id}
        logger.info("subscription.sync.started", extra=context)

        try:
            payload = await self._client.fetch_subscription(subscription_id)
        except PayPalError as exc:
            self._record_failure(exc, started, tags, context)
            raise

        if self._is_current is not None and not self._is_current():
            logger.info("subscription.sync.discarded", extra=context)
            metrics.increment("subscription.sync.discarded", tags=tags)
            return SyncResult(success=False, message=SYNC_DISCARDED_MESSAGE, discarded=True)

        now = self._clock()
        try:
            existing = self._store.get_by_provider_id(subscription_id)
            update = map_provider_subscription(
                payload,
                now=now,
                pro_marker=self._pro_marker,
                cancelled_since=existing.cancelled_at if existing is not None else None,
            )
            self._store.update_subscription(subscription_id, update.as_fields())
        except SubscriptionPersistenceError as exc:
            self._record_failure(exc, started, tags, context)
            raise

        settings_written = self._write_settings(user_id, update, context)
        audit_written = self._audit.record(
            SyncAuditEntry.from_sync(
                user_id=user_id,
                subscription_id=subscription_id,
                provider_payload=payload,
                update=update,
                projection=build_settings_projection(update),
            )
        )

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.increment("subscription.sync.success", tags=tags)
        metrics.timing("subscription.sync.duration_ms", duration_ms, tags=tags)
        logger.info(
            "subscription.sync.completed",
            extra={
                **context,
                "status": update.status,
                "plan_type": update.plan_type,
                "failed_payment_count": update.failed_payment_count,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return SyncResult(
            success=True,
            message=SYNC_SUCCESS_MESSAGE,
            subscription=payload,
            local_updates=update.as_payload(),
            sync_timestamp=format_timestamp(now),
            settings_written=settings_written,
            audit_written=audit_written,
        )

    def _write_settings(
        self, user_id: str, update: SubscriptionUpdate, context: dict[str, Any]
    ) -> bool:
        projection = build_settings_projection(update)
        try:
            self._store.update_user_settings(user_id, projection.as_fields())
        except SubscriptionPersistenceError:
            logger.exception("subscription.settings.write_failed", extra=context)
            metrics.increment("subscription.settings.write_failed")
            return False
        return True

    def _record_failure(
        self,
        exc: Exception,
        started: float,
        tags: dict[str, str],
        context: dict[str, Any],
    ) -> None:
        code = getattr(exc, "code", type(exc).__name__)
        metrics.increment("subscription.sync.failed", tags={**tags, "code": code})
        metrics.timing(
            "subscription.sync.duration_ms",
            (time.perf_counter() - started) * 1000,
            tags={**tags, "result": "error"},
        )
        logger.warning(
            "subscription.sync.failed",
            extra={**context, "code": code, "error": str(exc)},
        )


_SERVICE_INSTANCE: SubscriptionSyncService | None = None


def get_sync_service() -> SubscriptionSyncService:
    """Singleton accessor used by API routes; raises SyncConfigurationError when unset."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = SubscriptionSyncService.from_settings(store=get_subscription_store())
    return _SERVICE_INSTANCE


async def shutdown_sync_service() -> None:
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is not None:
        await _SERVICE_INSTANCE.aclose()
    _SERVICE_INSTANCE = None
