"""Periodic and on-demand sync scheduling for a signed-in subscriber."""

from __future__ import annotations

import asyncio
import logging

from billsync.clients.paypal import PayPalError
from billsync.config import settings
from billsync.observability.metrics import metrics
from billsync.services.subscriptions.errors import SubscriptionSyncError
from billsync.services.subscriptions.sync import SubscriptionSyncService, SyncResult

logger = logging.getLogger(__name__)


class PollingHandle:
    """Owns the background polling task; ``stop()`` cancels it and waits."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def stop(self) -> None:
        if self._task.done():
            # Retrieve the exception of a loop that crashed.
            exc = None if self._task.cancelled() else self._task.exception()
            if exc is not None:
                logger.error("subscription.polling.task_failed", extra={"error": repr(exc)})
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class SubscriptionPoller:
    """Runs the reconciliation every ``interval`` seconds until stopped."""

    def __init__(
        self,
        service: SubscriptionSyncService,
        subscription_id: str,
        user_id: str,
        *,
        interval: float | None = None,
    ) -> None:
        self._service = service
        self._subscription_id = subscription_id
        self._user_id = user_id
        self._interval = interval if interval is not None else settings.sync_interval_seconds
        if self._interval <= 0:
            raise ValueError("Polling interval must be positive.")
        self._last_result: SyncResult | None = None

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def start(self) -> PollingHandle:
        task = asyncio.create_task(
            self._run(), name=f"subscription-poll:{self._subscription_id}"
        )
        logger.info(
            "subscription.polling.started",
            extra={
                "subscription_id": self._subscription_id,
                "user_id": self._user_id,
                "interval_seconds": self._interval,
            },
        )
        metrics.gauge("subscription.polling.interval_seconds", self._interval)
        return PollingHandle(task)

    async def refresh(self) -> SyncResult | None:
        """Manual sync; failures are logged and reported as ``None``."""
        try:
            result = await self._service.sync_subscription(self._subscription_id, self._user_id)
        except (PayPalError, SubscriptionSyncError) as exc:
            logger.warning(
                "subscription.polling.sync_failed",
                extra={
                    "subscription_id": self._subscription_id,
                    "code": getattr(exc, "code", None),
                    "error": str(exc),
                },
            )
            metrics.increment("subscription.polling.sync_failed")
            return None
        self._last_result = result
        return result

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.refresh()
                except Exception:
                    logger.exception(
                        "subscription.polling.sync_failed",
                        extra={"subscription_id": self._subscription_id, "user_id": self._user_id},
                    )
                    metrics.increment("subscription.polling.sync_failed")
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.info(
                "subscription.polling.stopped",
                extra={"subscription_id": self._subscription_id, "user_id": self._user_id},
            )
            raise
