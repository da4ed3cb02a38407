"""
Billing database tables.

Organizations, customers, catalog (products, prices, usage meters),
checkout sessions, purchases, payment methods, subscriptions, billing
periods and runs, and the event log.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from flowledger.platform.billing.core.enums import (
    BillingPeriodStatus,
    BillingRunStatus,
    CheckoutSessionStatus,
    CheckoutSessionType,
    DiscountAmountType,
    EventNoun,
    FlowEventType,
    IntervalUnit,
    PaymentMethodType,
    PriceType,
    PurchaseStatus,
    SubscriptionCancellationReason,
    SubscriptionStatus,
)
from flowledger.platform.db import (
    Base,
    LivemodeMixin,
    OrganizationMixin,
    TimestampMixin,
    UTCDateTime,
    new_id,
)


def enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    """Store enum values (not member names) as plain strings."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=64,
        values_callable=lambda members: [member.value for member in members],
    )


class Organization(TimestampMixin, Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("org"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    allow_multiple_subscriptions_per_customer: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    fee_percentage: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    default_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)


class Customer(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "external_id", "livemode", name="uq_customers_org_external_id"
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("cust"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)


class UsageMeter(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "usage_meters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("meter"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Product(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("prod"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Price(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "prices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("price"))
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[PriceType] = mapped_column(enum_column(PriceType, "price_type"), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    interval_unit: Mapped[IntervalUnit | None] = mapped_column(
        enum_column(IntervalUnit, "interval_unit"), nullable=True
    )
    interval_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trial_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_meter_id: Mapped[str | None] = mapped_column(
        ForeignKey("usage_meters.id"), nullable=True
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Discount(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "discounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("disc"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_type: Mapped[DiscountAmountType] = mapped_column(
        enum_column(DiscountAmountType, "discount_amount_type"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PaymentMethod(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("pm"))
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("customers.id"), nullable=False, index=True
    )
    type: Mapped[PaymentMethodType] = mapped_column(
        enum_column(PaymentMethodType, "payment_method_type"), nullable=False
    )
    stripe_payment_method_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    billing_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    payment_method_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Purchase(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("pur"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("customers.id"), nullable=False, index=True
    )
    price_id: Mapped[str] = mapped_column(ForeignKey("prices.id"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    price_type: Mapped[PriceType] = mapped_column(
        enum_column(PriceType, "purchase_price_type"), nullable=False
    )
    status: Mapped[PurchaseStatus] = mapped_column(
        enum_column(PurchaseStatus, "purchase_status"), nullable=False
    )
    purchase_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class CheckoutSession(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "checkout_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("chckt"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[CheckoutSessionType] = mapped_column(
        enum_column(CheckoutSessionType, "checkout_session_type"), nullable=False
    )
    status: Mapped[CheckoutSessionStatus] = mapped_column(
        enum_column(CheckoutSessionStatus, "checkout_session_status"),
        nullable=False,
        default=CheckoutSessionStatus.OPEN,
    )
    customer_id: Mapped[str | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price_id: Mapped[str | None] = mapped_column(ForeignKey("prices.id"), nullable=True)
    purchase_id: Mapped[str | None] = mapped_column(ForeignKey("purchases.id"), nullable=True)
    discount_id: Mapped[str | None] = mapped_column(ForeignKey("discounts.id"), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_subscription_id: Mapped[str | None] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    output_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    output_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    preserve_billing_cycle_anchor: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    automatically_update_subscriptions: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    stripe_setup_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)


class FeeCalculation(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "fee_calculations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("feec"))
    checkout_session_id: Mapped[str] = mapped_column(
        ForeignKey("checkout_sessions.id"), nullable=False, unique=True
    )
    purchase_id: Mapped[str | None] = mapped_column(ForeignKey("purchases.id"), nullable=True)
    price_id: Mapped[str] = mapped_column(ForeignKey("prices.id"), nullable=False)
    discount_id: Mapped[str | None] = mapped_column(ForeignKey("discounts.id"), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    platform_fee_percentage: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    platform_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_due_amount: Mapped[int] = mapped_column(Integer, nullable=False)


class DiscountRedemption(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "discount_redemptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("dr"))
    discount_id: Mapped[str] = mapped_column(ForeignKey("discounts.id"), nullable=False)
    purchase_id: Mapped[str] = mapped_column(
        ForeignKey("purchases.id"), nullable=False, unique=True
    )
    discount_code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount_type: Mapped[DiscountAmountType] = mapped_column(
        enum_column(DiscountAmountType, "redemption_amount_type"), nullable=False
    )


class Subscription(OrganizationMixin, TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_customer_status", "customer_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("sub"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)
    price_id: Mapped[str] = mapped_column(ForeignKey("prices.id"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        enum_column(SubscriptionStatus, "subscription_status"), nullable=False
    )
    is_free_plan: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    renews: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    interval: Mapped[IntervalUnit | None] = mapped_column(
        enum_column(IntervalUnit, "subscription_interval"), nullable=True
    )
    interval_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billing_cycle_anchor_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    current_billing_period_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    current_billing_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    default_payment_method_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_methods.id"), nullable=True
    )
    backup_payment_method_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_methods.id"), nullable=True
    )
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[SubscriptionCancellationReason | None] = mapped_column(
        enum_column(SubscriptionCancellationReason, "subscription_cancellation_reason"),
        nullable=True,
    )
    replaced_by_subscription_id: Mapped[str | None] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=True
    )
    stripe_setup_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)


class SubscriptionItem(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "subscription_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("si"))
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    price_id: Mapped[str] = mapped_column(ForeignKey("prices.id"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_meter_id: Mapped[str | None] = mapped_column(
        ForeignKey("usage_meters.id"), nullable=True
    )
    added_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class BillingPeriod(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "billing_periods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("bp"))
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[BillingPeriodStatus] = mapped_column(
        enum_column(BillingPeriodStatus, "billing_period_status"), nullable=False
    )
    trial_period: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    proration_period: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class BillingRun(LivemodeMixin, TimestampMixin, Base):
    __tablename__ = "billing_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("br"))
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    billing_period_id: Mapped[str] = mapped_column(
        ForeignKey("billing_periods.id"), nullable=False
    )
    payment_method_id: Mapped[str] = mapped_column(
        ForeignKey("payment_methods.id"), nullable=False
    )
    status: Mapped[BillingRunStatus] = mapped_column(
        enum_column(BillingRunStatus, "billing_run_status"), nullable=False
    )
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class Event(OrganizationMixin, TimestampMixin, Base):
    """Immutable audit/event log record, deduplicated by content hash."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: new_id("evt"))
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[FlowEventType] = mapped_column(
        enum_column(FlowEventType, "flow_event_type"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    object_entity: Mapped[EventNoun] = mapped_column(
        enum_column(EventNoun, "event_noun"), nullable=False
    )
    object_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


__all__ = [
    "enum_column",
    "Organization",
    "Customer",
    "UsageMeter",
    "Product",
    "Price",
    "Discount",
    "PaymentMethod",
    "Purchase",
    "CheckoutSession",
    "FeeCalculation",
    "DiscountRedemption",
    "Subscription",
    "SubscriptionItem",
    "BillingPeriod",
    "BillingRun",
    "Event",
]
