"""
Subscription query helpers.

Upgrades cancel the old subscription and point it at its replacement
through ``replaced_by_subscription_id``. Resolving a customer's current
subscription follows that chain with a visited set and a hop limit.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.config import get_billing_config
from flowledger.platform.billing.core.entities import PaymentMethod, Subscription
from flowledger.platform.billing.core.enums import (
    SubscriptionCancellationReason,
    SubscriptionStatus,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import SubscriptionChainError

logger = structlog.get_logger(__name__)

CURRENT_SUBSCRIPTION_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.CANCELLATION_SCHEDULED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CREDIT_TRIAL,
    }
)

_not_upgraded = or_(
    Subscription.cancellation_reason.is_(None),
    Subscription.cancellation_reason != SubscriptionCancellationReason.UPGRADED_TO_PAID,
)


def is_subscription_current(subscription: Subscription) -> bool:
    """Current status and not replaced by an upgrade."""
    if subscription.cancellation_reason == SubscriptionCancellationReason.UPGRADED_TO_PAID:
        return False
    return subscription.status in CURRENT_SUBSCRIPTION_STATUSES


def is_active_paid_subscription(subscription: Subscription) -> bool:
    return (
        subscription.status == SubscriptionStatus.ACTIVE
        and not subscription.is_free_plan
        and subscription.cancellation_reason != SubscriptionCancellationReason.UPGRADED_TO_PAID
    )


async def select_current_subscriptions_for_customer(
    session: AsyncSession, customer_id: str, livemode: bool | None = None
) -> list[Subscription]:
    criteria = [
        Subscription.customer_id == customer_id,
        Subscription.status.in_(CURRENT_SUBSCRIPTION_STATUSES),
        _not_upgraded,
    ]
    if livemode is not None:
        criteria.append(Subscription.livemode == livemode)
    return await Repository(session, Subscription).select_where(
        *criteria, order_by=(Subscription.created_at.desc(), Subscription.id)
    )


async def select_active_subscriptions_for_customer(
    session: AsyncSession, customer_id: str
) -> list[Subscription]:
    """Subscriptions in ``ACTIVE`` status that were not replaced by an upgrade."""
    return await Repository(session, Subscription).select_where(
        Subscription.customer_id == customer_id,
        Subscription.status == SubscriptionStatus.ACTIVE,
        _not_upgraded,
        order_by=(Subscription.created_at, Subscription.id),
    )


async def select_active_paid_subscriptions_for_customer(
    session: AsyncSession, customer_id: str
) -> list[Subscription]:
    return [
        sub
        for sub in await select_active_subscriptions_for_customer(session, customer_id)
        if not sub.is_free_plan
    ]


async def select_active_free_subscriptions_for_customer(
    session: AsyncSession, customer_id: str
) -> list[Subscription]:
    return [
        sub
        for sub in await select_active_subscriptions_for_customer(session, customer_id)
        if sub.is_free_plan
    ]


async def customer_has_had_trial(session: AsyncSession, customer_id: str) -> bool:
    """True when any subscription of the customer ever had a trial end."""
    found = await Repository(session, Subscription).select_one_where(
        Subscription.customer_id == customer_id,
        Subscription.trial_end.is_not(None),
    )
    return found is not None


def calculate_trial_end(
    *, has_had_trial: bool, trial_period_days: int | None, now: datetime
) -> datetime | None:
    if has_had_trial or not trial_period_days:
        return None
    return now + timedelta(days=trial_period_days)


async def follow_replacement_chain(
    session: AsyncSession,
    subscription: Subscription,
    max_hops: int | None = None,
) -> Subscription:
    """Walk ``replaced_by_subscription_id`` links to the last subscription.

    Raises:
        SubscriptionChainError: the chain loops or exceeds ``max_hops``
    """
    limit = max_hops if max_hops is not None else get_billing_config().ledger.max_subscription_chain_hops
    repo = Repository(session, Subscription)
    visited = [subscription.id]
    current = subscription
    while current.replaced_by_subscription_id is not None:
        next_id = current.replaced_by_subscription_id
        if next_id in visited or len(visited) > limit:
            logger.error(
                "Subscription replacement chain does not terminate",
                subscription_id=subscription.id,
                visited=visited,
            )
            raise SubscriptionChainError(subscription.id, visited + [next_id])
        visited.append(next_id)
        current = await repo.select_by_id(next_id)
    return current


async def select_current_subscription_for_customer(
    session: AsyncSession,
    customer_id: str,
    livemode: bool | None = None,
    max_hops: int | None = None,
) -> Subscription | None:
    """The customer's current subscription, following upgrade links if needed."""
    current = await select_current_subscriptions_for_customer(session, customer_id, livemode)
    if current:
        return await follow_replacement_chain(session, current[0], max_hops)

    criteria = [
        Subscription.customer_id == customer_id,
        Subscription.replaced_by_subscription_id.is_not(None),
    ]
    if livemode is not None:
        criteria.append(Subscription.livemode == livemode)
    replaced = await Repository(session, Subscription).select_where(
        *criteria, order_by=(Subscription.created_at.desc(), Subscription.id)
    )
    if not replaced:
        return None
    resolved = await follow_replacement_chain(session, replaced[0], max_hops)
    return resolved if is_subscription_current(resolved) else None


async def safely_update_subscriptions_for_customer_to_new_payment_method(
    session: AsyncSession, payment_method: PaymentMethod
) -> list[Subscription]:
    """Point every current subscription of the payment method's customer at it.

    Credit trial subscriptions are left alone; they must be upgraded first.
    """
    updated: list[Subscription] = []
    for subscription in await select_current_subscriptions_for_customer(
        session, payment_method.customer_id, payment_method.livemode
    ):
        if subscription.status == SubscriptionStatus.CREDIT_TRIAL:
            logger.info(
                "Skipping credit trial subscription for payment method update",
                subscription_id=subscription.id,
            )
            continue
        if subscription.default_payment_method_id != payment_method.id:
            subscription.default_payment_method_id = payment_method.id
            updated.append(subscription)
    await session.flush()
    if updated:
        logger.info(
            "Subscriptions moved to new payment method",
            customer_id=payment_method.customer_id,
            payment_method_id=payment_method.id,
            subscription_ids=[s.id for s in updated],
        )
    return updated


__all__ = [
    "CURRENT_SUBSCRIPTION_STATUSES",
    "calculate_trial_end",
    "customer_has_had_trial",
    "follow_replacement_chain",
    "is_active_paid_subscription",
    "is_subscription_current",
    "safely_update_subscriptions_for_customer_to_new_payment_method",
    "select_active_free_subscriptions_for_customer",
    "select_active_paid_subscriptions_for_customer",
    "select_active_subscriptions_for_customer",
    "select_current_subscription_for_customer",
    "select_current_subscriptions_for_customer",
]
