"""
Usage ledger tables.

A ledger account accumulates entries for one (subscription, usage meter)
pair. Entries are grouped by the ledger transaction of the business
operation that produced them and are append-only: only ``status`` and
``discarded_at`` change after insertion.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from flowledger.platform.billing.core.entities import enum_column
from flowledger.platform.billing.core.enums import (
    LedgerEntryDirection,
    LedgerEntryStatus,
    LedgerEntryType,
    LedgerTransactionType,
    UsageCreditStatus,
    UsageCreditType,
)
from flowledger.platform.db import Base, OrganizationMixin, TimestampMixin, UTCDateTime, new_id


class UsageEvent(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("transaction_id", "usage_meter_id", name="uq_usage_events_transaction"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("usage"))
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    usage_meter_id: Mapped[str] = mapped_column(ForeignKey("usage_meters.id"), nullable=False)
    price_id: Mapped[str] = mapped_column(ForeignKey("prices.id"), nullable=False)
    billing_period_id: Mapped[str | None] = mapped_column(
        ForeignKey("billing_periods.id"), nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    properties: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class UsageCredit(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "usage_credits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("ucred"))
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    usage_meter_id: Mapped[str] = mapped_column(ForeignKey("usage_meters.id"), nullable=False)
    credit_type: Mapped[UsageCreditType] = mapped_column(
        enum_column(UsageCreditType, "usage_credit_type"), nullable=False
    )
    status: Mapped[UsageCreditStatus] = mapped_column(
        enum_column(UsageCreditStatus, "usage_credit_status"),
        nullable=False,
        default=UsageCreditStatus.POSTED,
    )
    issued_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_period_id: Mapped[str | None] = mapped_column(
        ForeignKey("billing_periods.id"), nullable=True
    )
    source_reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class LedgerAccount(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "usage_meter_id", name="uq_ledger_accounts_subscription_meter"
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("lacct"))
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    usage_meter_id: Mapped[str] = mapped_column(ForeignKey("usage_meters.id"), nullable=False)


class LedgerTransaction(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "livemode",
            "type",
            "initiating_source_type",
            "initiating_source_id",
            name="uq_ledger_transactions_initiating_source",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("ltxn"))
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    type: Mapped[LedgerTransactionType] = mapped_column(
        enum_column(LedgerTransactionType, "ledger_transaction_type"), nullable=False
    )
    initiating_source_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    initiating_source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)


class LedgerEntry(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_account_status", "ledger_account_id", "status"),
        Index("ix_ledger_entries_transaction", "ledger_transaction_id"),
        Index("ix_ledger_entries_usage_credit", "source_usage_credit_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("lentry"))
    ledger_transaction_id: Mapped[str] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=False
    )
    ledger_account_id: Mapped[str] = mapped_column(
        ForeignKey("ledger_accounts.id"), nullable=False
    )
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    usage_meter_id: Mapped[str] = mapped_column(ForeignKey("usage_meters.id"), nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(
        enum_column(LedgerEntryType, "ledger_entry_type"), nullable=False
    )
    direction: Mapped[LedgerEntryDirection] = mapped_column(
        enum_column(LedgerEntryDirection, "ledger_entry_direction"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LedgerEntryStatus] = mapped_column(
        enum_column(LedgerEntryStatus, "ledger_entry_status"), nullable=False
    )
    discarded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    entry_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_usage_event_id: Mapped[str | None] = mapped_column(
        ForeignKey("usage_events.id"), nullable=True
    )
    source_usage_credit_id: Mapped[str | None] = mapped_column(
        ForeignKey("usage_credits.id"), nullable=True
    )
    source_billing_period_calculation_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    billing_period_id: Mapped[str | None] = mapped_column(
        ForeignKey("billing_periods.id"), nullable=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)


__all__ = [
    "UsageEvent",
    "UsageCredit",
    "LedgerAccount",
    "LedgerTransaction",
    "LedgerEntry",
]
