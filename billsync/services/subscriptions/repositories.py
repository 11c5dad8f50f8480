"""Persistence backends for subscription records and their side tables."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from billsync.config import settings
from billsync.models.subscription import (
    PaymentTransaction,
    Subscription,
    SyncOperation,
    UserSettings,
)
from billsync.observability.metrics import metrics
from billsync.services.subscriptions.errors import (
    SubscriptionNotFoundError,
    SubscriptionPersistenceError,
)

logger = logging.getLogger(__name__)

DISPLAY_TRANSACTION_TYPES = ("subscription_activation", "subscription_renewal", "payment")


class SubscriptionStore(Protocol):
    """Persistence contract for the sync service and status reads."""

    def get_by_provider_id(self, subscription_id: str) -> Subscription | None:
        ...

    def get_current_for_user(self, user_id: str) -> Subscription | None:
        ...

    def add_subscription(self, record: Subscription) -> Subscription:
        ...

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        ...

    def update_user_settings(self, user_id: str, fields: dict[str, Any]) -> UserSettings:
        ...

    def get_user_settings(self, user_id: str) -> UserSettings | None:
        ...

    def record_sync_operation(self, entry: SyncOperation) -> SyncOperation:
        ...

    def list_sync_operations(self, user_id: str) -> list[SyncOperation]:
        ...

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        ...

    def list_recent_transactions(
        self, user_id: str, *, limit: int = 5
    ) -> list[PaymentTransaction]:
        ...


def _apply_fields(target: SQLModel, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(target, key):
            raise SubscriptionPersistenceError(
                f"Unknown column {key!r} for {type(target).__name__}"
            )
        setattr(target, key, value)


class InMemorySubscriptionStore(SubscriptionStore):
    """Thread-safe store used for local development and tests."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._settings: dict[str, UserSettings] = {}
        self._sync_operations: list[SyncOperation] = []
        self._transactions: list[PaymentTransaction] = []
        self._lock = Lock()

    def get_by_provider_id(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def get_current_for_user(self, user_id: str) -> Subscription | None:
        with self._lock:
            matches = [sub for sub in self._subscriptions.values() if sub.user_id == user_id]
        if not matches:
            return None
        return max(matches, key=lambda sub: sub.created_at)

    def add_subscription(self, record: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions[record.paypal_subscription_id] = record
        return record

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        with self._lock:
            record = self._subscriptions.get(subscription_id)
            if record is None:
                raise SubscriptionNotFoundError(subscription_id)
            _apply_fields(record, fields)
        metrics.increment("subscription.persistence.updated", tags={"repository": "memory"})
        return record

    def update_user_settings(self, user_id: str, fields: dict[str, Any]) -> UserSettings:
        with self._lock:
            row = self._settings.setdefault(user_id, UserSettings(user_id=user_id))
            _apply_fields(row, fields)
        return row

    def get_user_settings(self, user_id: str) -> UserSettings | None:
        with self._lock:
            return self._settings.get(user_id)

    def record_sync_operation(self, entry: SyncOperation) -> SyncOperation:
        with self._lock:
            self._sync_operations.append(entry)
        return entry

    def list_sync_operations(self, user_id: str) -> list[SyncOperation]:
        with self._lock:
            return [entry for entry in self._sync_operations if entry.user_id == user_id]

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with self._lock:
            self._transactions.append(transaction)
        return transaction

    def list_recent_transactions(
        self, user_id: str, *, limit: int = 5
    ) -> list[PaymentTransaction]:
        with self._lock:
            matches = [
                txn
                for txn in self._transactions
                if txn.user_id == user_id and txn.transaction_type in DISPLAY_TRANSACTION_TYPES
            ]
        ordered = sorted(matches, key=lambda txn: txn.created_at, reverse=True)
        return ordered[: max(0, limit)]


class SqlSubscriptionStore(SubscriptionStore):
    """SQLModel-backed store persisting to Postgres/Supabase (or SQLite locally)."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: Engine | None = None,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("DATABASE_URL is required for SqlSubscriptionStore.")
            engine = _build_engine(database_url, pool_min_size, pool_max_size)
        self._engine = engine
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._metrics_tags = {"repository": self._engine.dialect.name}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def get_by_provider_id(self, subscription_id: str) -> Subscription | None:
        statement = select(Subscription).where(
            Subscription.paypal_subscription_id == subscription_id
        )
        with self._guard("load subscription", subscription_id=subscription_id) as session:
            return session.exec(statement).first()

    def get_current_for_user(self, user_id: str) -> Subscription | None:
        statement = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        with self._guard("load current subscription", user_id=user_id) as session:
            return session.exec(statement).first()

    def add_subscription(self, record: Subscription) -> Subscription:
        with self._guard(
            "insert subscription", subscription_id=record.paypal_subscription_id
        ) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        statement = select(Subscription).where(
            Subscription.paypal_subscription_id == subscription_id
        )
        with self._guard("update subscription", subscription_id=subscription_id) as session:
            record = session.exec(statement).first()
            if record is None:
                raise SubscriptionNotFoundError(subscription_id)
            _apply_fields(record, fields)
            session.commit()
            session.refresh(record)
        metrics.increment("subscription.persistence.updated", tags=self._metrics_tags)
        logger.info(
            "subscription.persistence.updated",
            extra={
                "subscription_id": subscription_id,
                "status": record.status,
                "backend": self._metrics_tags["repository"],
            },
        )
        return record

    def update_user_settings(self, user_id: str, fields: dict[str, Any]) -> UserSettings:
        with self._guard("update user settings", user_id=user_id) as session:
            row = session.get(UserSettings, user_id)
            if row is None:
                row = UserSettings(user_id=user_id)
                session.add(row)
            _apply_fields(row, fields)
            session.commit()
            session.refresh(row)
            return row

    def get_user_settings(self, user_id: str) -> UserSettings | None:
        with self._guard("load user settings", user_id=user_id) as session:
            return session.get(UserSettings, user_id)

    def record_sync_operation(self, entry: SyncOperation) -> SyncOperation:
        with self._guard("insert sync operation", user_id=entry.user_id) as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def list_sync_operations(self, user_id: str) -> list[SyncOperation]:
        statement = (
            select(SyncOperation)
            .where(SyncOperation.user_id == user_id)
            .order_by(SyncOperation.created_at.asc())
        )
        with self._guard("list sync operations", user_id=user_id) as session:
            return list(session.exec(statement).all())

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with self._guard("insert transaction", user_id=transaction.user_id) as session:
            session.add(transaction)
            session.commit()
            session.refresh(transaction)
            return transaction

    def list_recent_transactions(
        self, user_id: str, *, limit: int = 5
    ) -> list[PaymentTransaction]:
        statement = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.transaction_type.in_(DISPLAY_TRANSACTION_TYPES),
            )
            .order_by(PaymentTransaction.created_at.desc())
            .limit(max(0, limit))
        )
        with self._guard("list transactions", user_id=user_id) as session:
            return list(session.exec(statement).all())

    @contextmanager
    def _guard(self, action: str, **context: Any) -> Iterator[Session]:
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception(
                "subscription.persistence.error",
                extra={"action": action, "backend": self._metrics_tags["repository"], **context},
            )
            metrics.increment("subscription.persistence.error", tags=self._metrics_tags)
            raise SubscriptionPersistenceError(f"Failed to {action}.") from exc


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any]]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql"):
        if "sslmode" not in query and (removed_ssl or "supabase.co" in host):
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args


def _build_engine(
    database_url: str, pool_min_size: int | None, pool_max_size: int | None
) -> Engine:
    parsed_url = make_url(database_url)
    sync_url, connect_args = _coerce_sync_database_url(parsed_url)
    engine_kwargs: dict[str, Any] = {"echo": settings.debug, "connect_args": connect_args}
    if not sync_url.startswith("sqlite"):
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = pool_min
        engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)
    return create_engine(sync_url, **engine_kwargs)


def build_subscription_store(database_url: str | None = None) -> SubscriptionStore:
    """Instantiate a SubscriptionStore using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("subscription.store.initialized", extra={"backend": "memory"})
        return InMemorySubscriptionStore()
    try:
        store = SqlSubscriptionStore(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
        )
        logger.info("subscription.store.initialized", extra={"backend": "database"})
        return store
    except Exception:
        logger.exception("subscription.store.init_failed", extra={"backend": "database"})
        raise


_STORE_INSTANCE: SubscriptionStore | None = None


def get_subscription_store() -> SubscriptionStore:
    """Singleton accessor used by API routes and the sync service."""
    global _STORE_INSTANCE  # noqa: PLW0603
    if _STORE_INSTANCE is None:
        _STORE_INSTANCE = build_subscription_store()
    return _STORE_INSTANCE
