"""
Subscription creation and activation.

``create_subscription_workflow`` provisions a subscription, its items, the
first billing period, ledger accounts for metered prices and (for paid,
non-trial subscriptions with a payment method) the first billing run.
``activate_subscription`` brings an ``INCOMPLETE`` subscription to life
once a payment method is available.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import (
    BillingPeriod,
    BillingRun,
    Customer,
    Organization,
    PaymentMethod,
    Price,
    Product,
    Subscription,
    SubscriptionItem,
)
from flowledger.platform.billing.core.enums import (
    BillingPeriodStatus,
    BillingRunStatus,
    IntervalUnit,
    PriceType,
    SubscriptionStatus,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.events import EventInsert, subscription_created_event
from flowledger.platform.billing.exceptions import ValidationError
from flowledger.platform.billing.ledger.accounts import ensure_ledger_accounts_for_subscription
from flowledger.platform.billing.ledger.entities import LedgerAccount
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)


def add_interval(start: datetime, unit: IntervalUnit, count: int) -> datetime:
    """``start`` moved forward by ``count`` intervals; month ends are clamped."""
    if unit == IntervalUnit.DAY:
        return start + timedelta(days=count)
    if unit == IntervalUnit.WEEK:
        return start + timedelta(weeks=count)
    months = count * (12 if unit == IntervalUnit.YEAR else 1)
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


@dataclass
class CreateSubscriptionParams:
    organization: Organization
    customer: Customer
    price: Price
    product: Product
    livemode: bool
    start_date: datetime
    interval: IntervalUnit
    interval_count: int
    quantity: int = 1
    trial_end: datetime | None = None
    default_payment_method: PaymentMethod | None = None
    stripe_setup_intent_id: str | None = None
    name: str | None = None
    metadata: dict[str, Any] | None = None
    billing_cycle_anchor_date: datetime | None = None
    preserved_billing_period_start: datetime | None = None
    preserved_billing_period_end: datetime | None = None
    prorate_first_period: bool = False
    auto_start: bool = True


@dataclass
class SubscriptionCreationResult:
    subscription: Subscription
    subscription_items: list[SubscriptionItem]
    billing_period: BillingPeriod | None
    billing_run: BillingRun | None
    ledger_accounts: list[LedgerAccount] = field(default_factory=list)
    events: list[EventInsert] = field(default_factory=list)


def _initial_status(params: CreateSubscriptionParams) -> SubscriptionStatus:
    if params.trial_end is not None and params.trial_end > params.start_date:
        return SubscriptionStatus.TRIALING
    if params.auto_start:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.INCOMPLETE


def _first_period(params: CreateSubscriptionParams) -> tuple[datetime, datetime, datetime]:
    """(anchor, period start, period end) for the first billing period."""
    anchor = params.billing_cycle_anchor_date or params.start_date
    if params.preserved_billing_period_end and params.start_date < params.preserved_billing_period_end:
        start = params.preserved_billing_period_start or params.start_date
        return anchor, start, params.preserved_billing_period_end
    if params.trial_end is not None and params.trial_end > params.start_date:
        return anchor, params.start_date, params.trial_end
    end = add_interval(anchor, params.interval, params.interval_count)
    while end <= params.start_date:
        end = add_interval(end, params.interval, params.interval_count)
    return anchor, params.start_date, end


async def _schedule_billing_run(
    session: AsyncSession,
    subscription: Subscription,
    billing_period: BillingPeriod,
    payment_method: PaymentMethod,
    scheduled_for: datetime,
) -> BillingRun:
    billing_run = await Repository(session, BillingRun).insert(
        subscription_id=subscription.id,
        billing_period_id=billing_period.id,
        payment_method_id=payment_method.id,
        status=BillingRunStatus.SCHEDULED,
        scheduled_for=scheduled_for,
        livemode=subscription.livemode,
    )
    logger.info(
        "Billing run scheduled",
        billing_run_id=billing_run.id,
        subscription_id=subscription.id,
        billing_period_id=billing_period.id,
    )
    return billing_run


async def create_subscription_workflow(
    session: AsyncSession, params: CreateSubscriptionParams
) -> SubscriptionCreationResult:
    price = params.price
    if price.product_id != params.product.id:
        raise ValidationError(
            "Price does not belong to product",
            context={"price_id": price.id, "product_id": params.product.id},
        )
    if params.default_payment_method and params.default_payment_method.customer_id != params.customer.id:
        raise ValidationError(
            "Payment method belongs to another customer",
            context={"payment_method_id": params.default_payment_method.id},
        )

    status = _initial_status(params)
    anchor, period_start, period_end = _first_period(params)
    is_free_plan = price.unit_price == 0 and price.type != PriceType.USAGE

    subscription = await Repository(session, Subscription).insert(
        organization_id=params.organization.id,
        livemode=params.livemode,
        customer_id=params.customer.id,
        price_id=price.id,
        name=params.name or params.product.name,
        status=status,
        is_free_plan=is_free_plan,
        start_date=params.start_date,
        trial_end=params.trial_end,
        interval=params.interval,
        interval_count=params.interval_count,
        billing_cycle_anchor_date=anchor,
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
        default_payment_method_id=(
            params.default_payment_method.id if params.default_payment_method else None
        ),
        stripe_setup_intent_id=params.stripe_setup_intent_id,
        metadata_json=params.metadata,
    )
    item = await Repository(session, SubscriptionItem).insert(
        subscription_id=subscription.id,
        price_id=price.id,
        name=price.name or params.product.name,
        quantity=params.quantity,
        unit_price=price.unit_price,
        usage_meter_id=price.usage_meter_id,
        added_date=params.start_date,
        livemode=params.livemode,
    )

    ledger_accounts: list[LedgerAccount] = []
    if price.usage_meter_id:
        ledger_accounts = await ensure_ledger_accounts_for_subscription(
            session, subscription, [price.usage_meter_id]
        )

    billing_period = None
    billing_run = None
    if status != SubscriptionStatus.INCOMPLETE:
        billing_period = await Repository(session, BillingPeriod).insert(
            subscription_id=subscription.id,
            start_date=period_start,
            end_date=period_end,
            status=BillingPeriodStatus.ACTIVE,
            trial_period=status == SubscriptionStatus.TRIALING,
            proration_period=params.prorate_first_period,
            livemode=params.livemode,
        )
        if (
            status == SubscriptionStatus.ACTIVE
            and not is_free_plan
            and params.default_payment_method is not None
        ):
            billing_run = await _schedule_billing_run(
                session,
                subscription,
                billing_period,
                params.default_payment_method,
                params.start_date,
            )

    logger.info(
        "Subscription created",
        subscription_id=subscription.id,
        customer_id=params.customer.id,
        price_id=price.id,
        status=status.value,
        is_free_plan=is_free_plan,
        trial_end=params.trial_end.isoformat() if params.trial_end else None,
        prorate_first_period=params.prorate_first_period,
    )
    return SubscriptionCreationResult(
        subscription=subscription,
        subscription_items=[item],
        billing_period=billing_period,
        billing_run=billing_run,
        ledger_accounts=ledger_accounts,
        events=[subscription_created_event(subscription, params.customer)],
    )


@dataclass
class SubscriptionActivationResult:
    subscription: Subscription
    billing_period: BillingPeriod | None
    billing_run: BillingRun | None


async def activate_subscription(
    session: AsyncSession,
    subscription: Subscription,
    payment_method: PaymentMethod,
    now: datetime | None = None,
) -> SubscriptionActivationResult:
    """Activate an incomplete subscription with ``payment_method``."""
    if subscription.status != SubscriptionStatus.INCOMPLETE:
        raise ValidationError(
            "Only incomplete subscriptions can be activated",
            context={"subscription_id": subscription.id, "status": subscription.status.value},
        )
    if payment_method.customer_id != subscription.customer_id:
        raise ValidationError(
            "Payment method belongs to another customer",
            context={"subscription_id": subscription.id, "payment_method_id": payment_method.id},
        )
    now = now or utcnow()
    trialing = subscription.trial_end is not None and subscription.trial_end > now

    period_start = subscription.current_billing_period_start or now
    period_end = subscription.current_billing_period_end
    if period_end is None or period_end <= now:
        period_start = now
        if trialing:
            period_end = subscription.trial_end
        else:
            period_end = add_interval(
                subscription.billing_cycle_anchor_date or now,
                subscription.interval or IntervalUnit.MONTH,
                subscription.interval_count or 1,
            )
            while period_end <= now:
                period_end = add_interval(
                    period_end,
                    subscription.interval or IntervalUnit.MONTH,
                    subscription.interval_count or 1,
                )

    await Repository(session, Subscription).update(
        subscription,
        status=SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE,
        default_payment_method_id=payment_method.id,
        billing_cycle_anchor_date=subscription.billing_cycle_anchor_date or now,
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
    )
    billing_period = await Repository(session, BillingPeriod).insert(
        subscription_id=subscription.id,
        start_date=period_start,
        end_date=period_end,
        status=BillingPeriodStatus.ACTIVE,
        trial_period=trialing,
        livemode=subscription.livemode,
    )
    billing_run = None
    if not trialing and not subscription.is_free_plan:
        billing_run = await _schedule_billing_run(
            session, subscription, billing_period, payment_method, now
        )
    logger.info(
        "Subscription activated",
        subscription_id=subscription.id,
        payment_method_id=payment_method.id,
        billing_run_id=billing_run.id if billing_run else None,
    )
    return SubscriptionActivationResult(subscription, billing_period, billing_run)


__all__ = [
    "CreateSubscriptionParams",
    "SubscriptionActivationResult",
    "SubscriptionCreationResult",
    "activate_subscription",
    "add_interval",
    "create_subscription_workflow",
]
