"""
Free-to-paid upgrade helpers.

Upgrading cancels the customer's free subscription with reason
``UPGRADED_TO_PAID`` and links it forward to the paid subscription.
A link, once set, is never silently replaced: linking to a different
subscription is a conflict.
"""

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import Subscription
from flowledger.platform.billing.core.enums import (
    SubscriptionCancellationReason,
    SubscriptionStatus,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import (
    LedgerInvariantError,
    SubscriptionLinkConflictError,
    ValidationError,
)
from flowledger.platform.billing.subscriptions.helpers import (
    follow_replacement_chain,
    select_active_free_subscriptions_for_customer,
)
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)


async def cancel_free_subscription_for_upgrade(
    session: AsyncSession, customer_id: str, now: datetime | None = None
) -> Subscription | None:
    """Cancel the customer's active free subscription, if there is one."""
    free_subscriptions = await select_active_free_subscriptions_for_customer(session, customer_id)
    if not free_subscriptions:
        return None
    if len(free_subscriptions) > 1:
        raise LedgerInvariantError(
            "Customer has more than one active free subscription",
            context={
                "customer_id": customer_id,
                "subscription_ids": [s.id for s in free_subscriptions],
            },
        )

    subscription = free_subscriptions[0]
    await Repository(session, Subscription).update(
        subscription,
        status=SubscriptionStatus.CANCELED,
        cancellation_reason=SubscriptionCancellationReason.UPGRADED_TO_PAID,
        canceled_at=now or utcnow(),
    )
    logger.info(
        "Free subscription canceled for upgrade",
        subscription_id=subscription.id,
        customer_id=customer_id,
    )
    return subscription


async def link_upgraded_subscriptions(
    session: AsyncSession, old_subscription: Subscription, new_subscription_id: str
) -> Subscription:
    """Set ``old_subscription.replaced_by_subscription_id``.

    Calling again with the same target is a no-op.

    Raises:
        SubscriptionLinkConflictError: already linked to another subscription
        ValidationError: the link would point at itself or close a loop
        NotFoundError: the new subscription does not exist
    """
    existing = old_subscription.replaced_by_subscription_id
    if existing == new_subscription_id:
        return old_subscription
    if existing is not None:
        logger.warning(
            "Refusing to relink upgraded subscription",
            subscription_id=old_subscription.id,
            replaced_by_subscription_id=existing,
            requested_replaced_by_subscription_id=new_subscription_id,
        )
        raise SubscriptionLinkConflictError(old_subscription.id, existing, new_subscription_id)
    if new_subscription_id == old_subscription.id:
        raise ValidationError(
            "A subscription cannot replace itself",
            context={"subscription_id": old_subscription.id},
        )

    new_subscription = await Repository(session, Subscription).select_by_id(new_subscription_id)
    tail = await follow_replacement_chain(session, new_subscription)
    if tail.id == old_subscription.id:
        raise ValidationError(
            "Linking would create a subscription replacement loop",
            context={"subscription_id": old_subscription.id, "new_subscription_id": new_subscription_id},
        )

    await Repository(session, Subscription).update(
        old_subscription, replaced_by_subscription_id=new_subscription_id
    )
    logger.info(
        "Subscriptions linked for upgrade",
        subscription_id=old_subscription.id,
        replaced_by_subscription_id=new_subscription_id,
    )
    return old_subscription


__all__ = ["cancel_free_subscription_for_upgrade", "link_upgraded_subscriptions"]
