"""
Setup intent reconciliation.

``process_setup_intent_succeeded`` applies a succeeded setup intent to the
checkout session that started it. The provider delivers webhooks at least
once, so the setup intent id is the idempotency key: once a subscription
carries it, later deliveries take the replay path and return the stored
result without touching state.

All mutations run inside a SAVEPOINT. A domain error rolls the savepoint
back and is returned as ``Err``; nothing the workflow wrote survives it.
"""

from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.checkout.bookkeeping import (
    process_purchase_bookkeeping_for_checkout_session,
)
from flowledger.platform.billing.checkout.intents import (
    SetupIntent,
    checkout_session_status_from_setup_intent,
    parse_checkout_session_metadata,
)
from flowledger.platform.billing.checkout.payment_methods import (
    payment_method_for_stripe_payment_method_id,
)
from flowledger.platform.billing.checkout.results import (
    ActivateSubscriptionResult,
    AddPaymentMethodResult,
    ReconciliationResult,
    SubscriptionCreatingResult,
    TerminalCheckoutSessionResult,
)
from flowledger.platform.billing.core.entities import (
    BillingRun,
    CheckoutSession,
    Customer,
    Organization,
    PaymentMethod,
    Price,
    Product,
    Purchase,
    Subscription,
    SubscriptionItem,
)
from flowledger.platform.billing.core.enums import (
    CheckoutSessionType,
    PurchaseStatus,
    SubscriptionStatus,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.events import (
    EventInsert,
    insert_events,
    purchase_completed_event,
    subscription_canceled_event,
)
from flowledger.platform.billing.exceptions import (
    BillingError,
    ConflictError,
    CreditTrialPaymentMethodError,
    DuplicatePaidSubscriptionError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from flowledger.platform.billing.gateway import PaymentGateway
from flowledger.platform.billing.result import Err, Ok, Result
from flowledger.platform.billing.subscriptions.helpers import (
    calculate_trial_end,
    customer_has_had_trial,
    safely_update_subscriptions_for_customer_to_new_payment_method,
    select_active_paid_subscriptions_for_customer,
)
from flowledger.platform.billing.subscriptions.upgrade import (
    cancel_free_subscription_for_upgrade,
    link_upgraded_subscriptions,
)
from flowledger.platform.billing.subscriptions.workflow import (
    CreateSubscriptionParams,
    activate_subscription,
    create_subscription_workflow,
)
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)

SUBSCRIPTION_CREATING_TYPES = (CheckoutSessionType.PRODUCT, CheckoutSessionType.PURCHASE)


# ============================================================================
# Shared lookups
# ============================================================================


async def _first_billing_run(session: AsyncSession, subscription: Subscription) -> BillingRun | None:
    runs = await Repository(session, BillingRun).select_where(
        BillingRun.subscription_id == subscription.id,
        order_by=(BillingRun.created_at, BillingRun.id),
    )
    return runs[0] if runs else None


async def _default_payment_method(
    session: AsyncSession, subscription: Subscription
) -> PaymentMethod | None:
    if subscription.default_payment_method_id is None:
        return None
    return await Repository(session, PaymentMethod).find_by_id(subscription.default_payment_method_id)


async def _payment_method_from_intent(
    session: AsyncSession,
    gateway: PaymentGateway,
    setup_intent: SetupIntent,
    customer: Customer,
    livemode: bool,
) -> PaymentMethod:
    if not setup_intent.payment_method:
        raise NotFoundError("PaymentMethod", setup_intent_id=setup_intent.id)
    return await payment_method_for_stripe_payment_method_id(
        session,
        gateway,
        stripe_payment_method_id=setup_intent.payment_method,
        customer=customer,
        livemode=livemode,
    )


async def _sync_stripe_customer(
    session: AsyncSession, customer: Customer, stripe_customer_id: str | None
) -> None:
    if stripe_customer_id and customer.stripe_customer_id != stripe_customer_id:
        await Repository(session, Customer).update(customer, stripe_customer_id=stripe_customer_id)


# ============================================================================
# Replay
# ============================================================================


async def _replay_processed_setup_intent(
    session: AsyncSession, setup_intent: SetupIntent, subscription: Subscription
) -> ReconciliationResult:
    """Rebuild the result of an earlier, already committed delivery."""
    metadata = parse_checkout_session_metadata(setup_intent.metadata)
    checkout_session = await Repository(session, CheckoutSession).select_by_id(
        metadata.checkout_session_id
    )
    organization = await Repository(session, Organization).select_by_id(
        checkout_session.organization_id
    )
    customer = await Repository(session, Customer).select_by_id(subscription.customer_id)
    payment_method = await _default_payment_method(session, subscription)
    billing_run = await _first_billing_run(session, subscription)

    logger.info(
        "Setup intent already processed, replaying result",
        setup_intent_id=setup_intent.id,
        subscription_id=subscription.id,
        checkout_session_id=checkout_session.id,
    )

    if checkout_session.type == CheckoutSessionType.ACTIVATE_SUBSCRIPTION:
        if payment_method is None:
            raise NotFoundError("PaymentMethod", subscription_id=subscription.id)
        return ActivateSubscriptionResult(
            checkout_session=checkout_session,
            organization=organization,
            customer=customer,
            subscription=subscription,
            payment_method=payment_method,
            billing_run=billing_run,
            replayed=True,
        )

    if checkout_session.type in SUBSCRIPTION_CREATING_TYPES:
        price = await Repository(session, Price).select_by_id(subscription.price_id)
        product = await Repository(session, Product).select_by_id(price.product_id)
        purchase = None
        if checkout_session.purchase_id:
            purchase = await Repository(session, Purchase).find_by_id(checkout_session.purchase_id)
        return SubscriptionCreatingResult(
            type=checkout_session.type,
            checkout_session=checkout_session,
            organization=organization,
            customer=customer,
            price=price,
            product=product,
            subscription=subscription,
            purchase=purchase,
            payment_method=payment_method,
            billing_run=billing_run,
            replayed=True,
        )

    raise ValidationError(
        "Setup intent was already used by a subscription",
        context={
            "setup_intent_id": setup_intent.id,
            "subscription_id": subscription.id,
            "checkout_session_type": checkout_session.type.value,
        },
    )


# ============================================================================
# Branches
# ============================================================================


async def _process_add_payment_method(
    session: AsyncSession,
    setup_intent: SetupIntent,
    gateway: PaymentGateway,
    checkout_session: CheckoutSession,
    organization: Organization,
) -> AddPaymentMethodResult:
    if not checkout_session.customer_id:
        raise NotFoundError("Customer", checkout_session_id=checkout_session.id)
    customer = await Repository(session, Customer).select_by_id(checkout_session.customer_id)
    await _sync_stripe_customer(session, customer, setup_intent.customer)
    payment_method = await _payment_method_from_intent(
        session, gateway, setup_intent, customer, checkout_session.livemode
    )

    target = None
    if checkout_session.target_subscription_id:
        target = await Repository(session, Subscription).select_by_id(
            checkout_session.target_subscription_id
        )
        if target.customer_id != customer.id:
            raise ValidationError(
                "Target subscription belongs to another customer",
                context={"subscription_id": target.id, "customer_id": customer.id},
            )
        if target.status == SubscriptionStatus.CREDIT_TRIAL:
            raise CreditTrialPaymentMethodError(target.id)
        await Repository(session, Subscription).update(
            target, default_payment_method_id=payment_method.id
        )

    updated: list[Subscription] = []
    if checkout_session.automatically_update_subscriptions:
        updated = await safely_update_subscriptions_for_customer_to_new_payment_method(
            session, payment_method
        )

    logger.info(
        "Payment method added from setup intent",
        checkout_session_id=checkout_session.id,
        payment_method_id=payment_method.id,
        target_subscription_id=target.id if target else None,
        updated_subscriptions=len(updated),
    )
    return AddPaymentMethodResult(
        checkout_session=checkout_session,
        organization=organization,
        customer=customer,
        payment_method=payment_method,
        subscription=target,
        updated_subscriptions=updated,
    )


async def _process_activate_subscription(
    session: AsyncSession,
    setup_intent: SetupIntent,
    gateway: PaymentGateway,
    checkout_session: CheckoutSession,
    organization: Organization,
    now: datetime,
) -> ActivateSubscriptionResult:
    if not checkout_session.target_subscription_id:
        raise ValidationError(
            "Activation checkout session has no target subscription",
            context={"checkout_session_id": checkout_session.id},
        )
    subscriptions = Repository(session, Subscription)
    subscription = await subscriptions.select_by_id(checkout_session.target_subscription_id)
    items = await Repository(session, SubscriptionItem).select_where(
        SubscriptionItem.subscription_id == subscription.id
    )
    if not items:
        raise NotFoundError("SubscriptionItem", subscription_id=subscription.id)

    customer = await Repository(session, Customer).select_by_id(subscription.customer_id)
    await _sync_stripe_customer(session, customer, setup_intent.customer)
    payment_method = await _payment_method_from_intent(
        session, gateway, setup_intent, customer, subscription.livemode
    )

    # Claim the intent before activating; the unique index rejects a concurrent delivery.
    subscription_id = subscription.id
    try:
        await subscriptions.update(subscription, stripe_setup_intent_id=setup_intent.id)
    except IntegrityError as exc:
        raise ConflictError(
            "Setup intent is already claimed by another subscription",
            context={"setup_intent_id": setup_intent.id, "subscription_id": subscription_id},
        ) from exc

    activation = await activate_subscription(session, subscription, payment_method, now=now)
    return ActivateSubscriptionResult(
        checkout_session=checkout_session,
        organization=organization,
        customer=customer,
        subscription=activation.subscription,
        payment_method=payment_method,
        billing_run=activation.billing_run,
    )


def _preserved_billing_cycle(
    checkout_session: CheckoutSession,
    free_subscription: Subscription | None,
    now: datetime,
) -> dict[str, object]:
    """Billing cycle parameters carried over from the replaced free plan."""
    if not checkout_session.preserve_billing_cycle_anchor or free_subscription is None:
        return {}
    period_end = free_subscription.current_billing_period_end
    if period_end is None or now > period_end:
        return {}
    return {
        "billing_cycle_anchor_date": free_subscription.billing_cycle_anchor_date,
        "preserved_billing_period_start": free_subscription.current_billing_period_start,
        "preserved_billing_period_end": period_end,
        "prorate_first_period": True,
    }


async def _process_subscription_creating(
    session: AsyncSession,
    setup_intent: SetupIntent,
    gateway: PaymentGateway,
    checkout_session: CheckoutSession,
    organization: Organization,
    now: datetime,
) -> tuple[SubscriptionCreatingResult, list[EventInsert]]:
    if not checkout_session.price_id:
        raise ValidationError(
            "Checkout session has no price",
            context={"checkout_session_id": checkout_session.id},
        )
    price = await Repository(session, Price).select_by_id(checkout_session.price_id)
    product = await Repository(session, Product).select_by_id(price.product_id)
    if product.organization_id != organization.id:
        raise ValidationError(
            "Price belongs to another organization",
            context={"price_id": price.id, "organization_id": organization.id},
        )
    if price.interval_unit is None:
        raise ValidationError(
            "Price has no billing interval",
            context={"price_id": price.id, "price_type": price.type.value},
        )

    bookkeeping = await process_purchase_bookkeeping_for_checkout_session(
        session,
        checkout_session=checkout_session,
        organization=organization,
        price=price,
        product=product,
        stripe_customer_id=setup_intent.customer,
    )
    customer = bookkeeping.customer
    events = list(bookkeeping.events)
    payment_method = await _payment_method_from_intent(
        session, gateway, setup_intent, customer, checkout_session.livemode
    )

    if not organization.allow_multiple_subscriptions_per_customer:
        paid = await select_active_paid_subscriptions_for_customer(session, customer.id)
        if paid:
            logger.warning(
                "Customer already has an active paid subscription",
                customer_id=customer.id,
                subscription_ids=[s.id for s in paid],
                checkout_session_id=checkout_session.id,
            )
            raise DuplicatePaidSubscriptionError(customer.id, [s.id for s in paid])

    trial_end = calculate_trial_end(
        has_had_trial=await customer_has_had_trial(session, customer.id),
        trial_period_days=price.trial_period_days,
        now=now,
    )
    canceled_free = await cancel_free_subscription_for_upgrade(session, customer.id, now=now)

    # A concurrent delivery of the same intent loses on the unique index.
    checkout_session_id = checkout_session.id
    try:
        creation = await create_subscription_workflow(
            session,
            CreateSubscriptionParams(
                organization=organization,
                customer=customer,
                price=price,
                product=product,
                livemode=checkout_session.livemode,
                start_date=now,
                interval=price.interval_unit,
                interval_count=price.interval_count or 1,
                quantity=checkout_session.quantity,
                trial_end=trial_end,
                default_payment_method=payment_method,
                stripe_setup_intent_id=setup_intent.id,
                name=checkout_session.output_name,
                metadata=checkout_session.output_metadata,
                **_preserved_billing_cycle(checkout_session, canceled_free, now),
            ),
        )
    except IntegrityError as exc:
        raise ConflictError(
            "Setup intent is already claimed by another subscription",
            context={
                "setup_intent_id": setup_intent.id,
                "checkout_session_id": checkout_session_id,
            },
        ) from exc
    subscription = creation.subscription
    events.extend(creation.events)

    if canceled_free is not None:
        await link_upgraded_subscriptions(session, canceled_free, subscription.id)
        events.append(subscription_canceled_event(canceled_free, customer, now))

    purchase = await Repository(session, Purchase).update(
        bookkeeping.purchase, status=PurchaseStatus.PAID, purchase_date=now
    )
    events.append(purchase_completed_event(purchase, customer, now))

    result = SubscriptionCreatingResult(
        type=checkout_session.type,
        checkout_session=checkout_session,
        organization=organization,
        customer=customer,
        price=price,
        product=product,
        subscription=subscription,
        purchase=purchase,
        payment_method=payment_method,
        billing_run=creation.billing_run,
        canceled_free_subscription=canceled_free,
    )
    return result, events


# ============================================================================
# Entry point
# ============================================================================


async def _reconcile(
    session: AsyncSession,
    setup_intent: SetupIntent,
    gateway: PaymentGateway,
    now: datetime,
) -> ReconciliationResult:
    processed = await Repository(session, Subscription).select_one_where(
        Subscription.stripe_setup_intent_id == setup_intent.id
    )
    if processed is not None:
        return await _replay_processed_setup_intent(session, setup_intent, processed)

    metadata = parse_checkout_session_metadata(setup_intent.metadata)
    if setup_intent.status != "succeeded":
        raise ValidationError(
            "Setup intent has not succeeded",
            context={"setup_intent_id": setup_intent.id, "status": setup_intent.status},
        )
    checkout_sessions = Repository(session, CheckoutSession)
    checkout_session = await checkout_sessions.select_by_id(metadata.checkout_session_id)
    organization = await Repository(session, Organization).select_by_id(
        checkout_session.organization_id
    )

    if checkout_session.status.is_terminal:
        customer = None
        if checkout_session.customer_id:
            customer = await Repository(session, Customer).find_by_id(checkout_session.customer_id)
        logger.info(
            "Checkout session already finished, ignoring setup intent",
            checkout_session_id=checkout_session.id,
            status=checkout_session.status.value,
            setup_intent_id=setup_intent.id,
        )
        return TerminalCheckoutSessionResult(
            type=checkout_session.type,
            checkout_session=checkout_session,
            organization=organization,
            customer=customer,
        )

    await checkout_sessions.update(
        checkout_session,
        status=checkout_session_status_from_setup_intent(setup_intent.status),
        stripe_setup_intent_id=setup_intent.id,
    )

    events: list[EventInsert] = []
    result: ReconciliationResult
    if checkout_session.type == CheckoutSessionType.ADD_PAYMENT_METHOD:
        result = await _process_add_payment_method(
            session, setup_intent, gateway, checkout_session, organization
        )
    elif checkout_session.type == CheckoutSessionType.ACTIVATE_SUBSCRIPTION:
        result = await _process_activate_subscription(
            session, setup_intent, gateway, checkout_session, organization, now
        )
    elif checkout_session.type in SUBSCRIPTION_CREATING_TYPES:
        result, events = await _process_subscription_creating(
            session, setup_intent, gateway, checkout_session, organization, now
        )
    else:
        raise ValidationError(
            "Checkout session type is not supported for setup intents",
            context={
                "checkout_session_id": checkout_session.id,
                "checkout_session_type": checkout_session.type.value,
            },
        )

    result.events = await insert_events(session, events)
    return result


async def process_setup_intent_succeeded(
    session: AsyncSession,
    setup_intent: SetupIntent,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> Result[ReconciliationResult]:
    """Apply a succeeded setup intent to its checkout session.

    Returns ``Ok`` with a result tagged by checkout session type, or ``Err``
    with the domain error; on ``Err`` nothing written by the workflow is
    left in the session. ``LedgerInvariantError`` propagates.
    """
    now = now or utcnow()
    log = logger.bind(setup_intent_id=setup_intent.id)
    try:
        async with session.begin_nested():
            result = await _reconcile(session, setup_intent, gateway, now)
    except LedgerInvariantError:
        log.error("Ledger invariant violated while reconciling setup intent", exc_info=True)
        raise
    except BillingError as exc:
        log.warning(
            "Setup intent reconciliation failed",
            error_code=exc.error_code,
            error=exc.message,
        )
        return Err(exc)

    log.info(
        "Setup intent reconciled",
        checkout_session_type=result.type.value,
        checkout_session_id=result.checkout_session.id,
        replayed=result.replayed,
    )
    return Ok(result)


__all__ = ["process_setup_intent_succeeded"]
