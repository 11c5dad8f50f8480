"""Best-effort audit trail for subscription sync runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from billsync.models.subscription import SyncOperation
from billsync.observability.metrics import metrics
from billsync.services.subscriptions.errors import SubscriptionPersistenceError
from billsync.services.subscriptions.mapping import SettingsProjection, SubscriptionUpdate
from billsync.services.subscriptions.repositories import SubscriptionStore

logger = logging.getLogger(__name__)

OPERATION_PAYPAL_SYNC = "paypal_subscription_sync"
RESULT_SUCCESS = "success"


@dataclass(frozen=True)
class SyncAuditEntry:
    """Snapshot of one reconciliation: what PayPal said and what we wrote."""

    user_id: str
    subscription_id: str
    provider_payload: dict[str, Any]
    subscription_update: dict[str, Any]
    settings_update: dict[str, Any]
    operation_type: str = OPERATION_PAYPAL_SYNC
    sync_result: str = RESULT_SUCCESS

    @classmethod
    def from_sync(
        cls,
        *,
        user_id: str,
        subscription_id: str,
        provider_payload: dict[str, Any],
        update: SubscriptionUpdate,
        projection: SettingsProjection,
    ) -> SyncAuditEntry:
        return cls(
            user_id=user_id,
            subscription_id=subscription_id,
            provider_payload=provider_payload,
            subscription_update=update.as_payload(),
            settings_update=projection.as_payload(),
        )

    def to_record(self) -> SyncOperation:
        return SyncOperation(
            user_id=self.user_id,
            operation_type=self.operation_type,
            paypal_subscription_id=self.subscription_id,
            sync_result=self.sync_result,
            paypal_data=self.provider_payload,
            local_updates={
                "subscription": self.subscription_update,
                "user_settings": self.settings_update,
            },
        )


class SyncAuditLog:
    """Writes audit entries without ever failing the sync that produced them."""

    def __init__(self, store: SubscriptionStore) -> None:
        self._store = store

    def record(self, entry: SyncAuditEntry) -> bool:
        """Persist ``entry``; returns False (after logging) when the write fails."""
        try:
            self._store.record_sync_operation(entry.to_record())
        except (SubscriptionPersistenceError, ValueError, TypeError) as exc:
            logger.warning(
                "subscription.audit.write_failed",
                extra={
                    "user_id": entry.user_id,
                    "subscription_id": entry.subscription_id,
                    "operation_type": entry.operation_type,
                    "error": str(exc),
                },
            )
            metrics.increment(
                "subscription.audit.write_failed", tags={"operation": entry.operation_type}
            )
            return False
        logger.info(
            "subscription.audit.recorded",
            extra={
                "user_id": entry.user_id,
                "subscription_id": entry.subscription_id,
                "operation_type": entry.operation_type,
                "status": entry.subscription_update.get("status"),
            },
        )
        metrics.increment("subscription.audit.recorded", tags={"operation": entry.operation_type})
        return True
