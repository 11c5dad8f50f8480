"""SQLModel mappings for PayPal subscriptions and their side tables."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(SQLModel, table=True):
    """Persisted PayPal subscription state, one current row per user."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.Index("ix_subscriptions_user_id", "user_id"),
        sa.UniqueConstraint("paypal_subscription_id", name="uq_subscriptions_paypal_id"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=Column(sa.Uuid, primary_key=True))
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    paypal_subscription_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    paypal_plan_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    status: str = Field(sa_column=Column(String(length=64), nullable=False))
    plan_type: str = Field(
        default="starter",
        sa_column=Column(String(length=32), nullable=False, server_default="starter"),
    )
    start_time: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_period_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    next_billing_time: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    cancelled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancellation_reason: str | None = Field(
        default=None, sa_column=Column(String(length=512), nullable=True)
    )
    failed_payment_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )
    last_payment_amount: float | None = Field(
        default=None, sa_column=Column(Float, nullable=True)
    )
    last_payment_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cycle_count: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    billing_cycles: list[dict[str, Any]] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    synced_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )


class PaymentTransaction(SQLModel, table=True):
    """Append-only payment log written by the webhook collaborator."""

    __tablename__ = "payment_transactions"
    __table_args__ = (sa.Index("ix_payment_transactions_user_id", "user_id"),)

    id: UUID = Field(default_factory=uuid4, sa_column=Column(sa.Uuid, primary_key=True))
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    paypal_transaction_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    transaction_type: str = Field(sa_column=Column(String(length=64), nullable=False))
    amount: float = Field(sa_column=Column(Float, nullable=False))
    currency: str = Field(
        default="USD", sa_column=Column(String(length=8), nullable=False, server_default="USD")
    )
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    plan_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    payment_method: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    transaction_metadata: dict[str, Any] | None = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class UserSettings(SQLModel, table=True):
    """Denormalized subscription projection on the user's settings row."""

    __tablename__ = "user_settings"

    user_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    plan: str | None = Field(default=None, sa_column=Column(String(length=32), nullable=True))
    subscription_expiry: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    payment_status: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    subscription_status: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    auto_renew: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    last_payment_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    synced_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class SyncOperation(SQLModel, table=True):
    """Audit trail of reconciliation runs against PayPal."""

    __tablename__ = "sync_operations"
    __table_args__ = (sa.Index("ix_sync_operations_user_id", "user_id"),)

    id: UUID = Field(default_factory=uuid4, sa_column=Column(sa.Uuid, primary_key=True))
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    operation_type: str = Field(sa_column=Column(String(length=64), nullable=False))
    paypal_subscription_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    sync_result: str = Field(sa_column=Column(String(length=32), nullable=False))
    paypal_data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    local_updates: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
