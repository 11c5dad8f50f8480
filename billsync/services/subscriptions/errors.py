"""Shared error classes for subscription sync and persistence."""

from __future__ import annotations


class SubscriptionSyncError(RuntimeError):
    """Base exception raised by the reconciliation service."""

    def __init__(self, message: str, code: str = "SUBSCRIPTION_SYNC_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SyncConfigurationError(SubscriptionSyncError):
    """Raised when required secrets are missing; nothing is attempted."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required environment variables: {', '.join(missing)}",
            code="SYNC_CONFIG_MISSING",
        )
        self.missing = missing


class SubscriptionPersistenceError(SubscriptionSyncError):
    """Raised when the primary subscription write fails."""

    def __init__(self, message: str, code: str = "SUBSCRIPTION_PERSIST_FAILED") -> None:
        super().__init__(message, code=code)


class SubscriptionNotFoundError(SubscriptionPersistenceError):
    """Raised when no local row exists for a provider subscription id."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"No local subscription found for {subscription_id}",
            code="SUBSCRIPTION_NOT_FOUND",
        )
