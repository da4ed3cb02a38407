"""
Purchase bookkeeping for subscription-creating checkout sessions.

Runs before a subscription is created: resolves (or creates) the customer,
opens the purchase, redeems the checkout discount and records the fee
calculation. Every step reuses rows from an earlier attempt for the same
checkout session.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.config import get_billing_config
from flowledger.platform.billing.core.entities import (
    CheckoutSession,
    Customer,
    Discount,
    DiscountRedemption,
    FeeCalculation,
    Organization,
    Price,
    Product,
    Purchase,
)
from flowledger.platform.billing.core.enums import DiscountAmountType, PurchaseStatus
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.events import EventInsert, customer_created_event
from flowledger.platform.billing.exceptions import ValidationError
from flowledger.platform.db import new_id

logger = structlog.get_logger(__name__)


@dataclass
class PurchaseBookkeepingResult:
    customer: Customer
    purchase: Purchase
    fee_calculation: FeeCalculation
    discount_redemption: DiscountRedemption | None = None
    events: list[EventInsert] = field(default_factory=list)


def discount_amount_for(discount: Discount | None, base_amount: int) -> int:
    if discount is None:
        return 0
    if discount.amount_type == DiscountAmountType.PERCENT:
        amount = (Decimal(base_amount) * Decimal(discount.amount) / 100).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        return min(int(amount), base_amount)
    return min(discount.amount, base_amount)


def platform_fee_for(amount: int, percentage: Decimal) -> int:
    return int((Decimal(amount) * percentage / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


async def _resolve_customer(
    session: AsyncSession,
    checkout_session: CheckoutSession,
    stripe_customer_id: str | None,
) -> tuple[Customer, list[EventInsert]]:
    repo = Repository(session, Customer)
    if checkout_session.customer_id:
        customer = await repo.select_by_id(checkout_session.customer_id)
        if stripe_customer_id and customer.stripe_customer_id != stripe_customer_id:
            await repo.update(customer, stripe_customer_id=stripe_customer_id)
        return customer, []

    if not checkout_session.customer_email:
        raise ValidationError(
            "Checkout session has neither a customer nor a customer email",
            context={"checkout_session_id": checkout_session.id},
        )
    customer = await repo.insert(
        organization_id=checkout_session.organization_id,
        livemode=checkout_session.livemode,
        external_id=new_id("ext"),
        email=checkout_session.customer_email,
        name=checkout_session.customer_name,
        stripe_customer_id=stripe_customer_id,
    )
    checkout_session.customer_id = customer.id
    logger.info(
        "Customer created from checkout session",
        customer_id=customer.id,
        checkout_session_id=checkout_session.id,
    )
    return customer, [customer_created_event(customer)]


async def process_purchase_bookkeeping_for_checkout_session(
    session: AsyncSession,
    *,
    checkout_session: CheckoutSession,
    organization: Organization,
    price: Price,
    product: Product,
    stripe_customer_id: str | None = None,
) -> PurchaseBookkeepingResult:
    customer, events = await _resolve_customer(session, checkout_session, stripe_customer_id)

    purchases = Repository(session, Purchase)
    if checkout_session.purchase_id:
        purchase = await purchases.select_by_id(checkout_session.purchase_id)
    else:
        purchase = await purchases.insert(
            organization_id=organization.id,
            livemode=checkout_session.livemode,
            customer_id=customer.id,
            price_id=price.id,
            name=checkout_session.output_name or product.name,
            quantity=checkout_session.quantity,
            price_type=price.type,
            status=PurchaseStatus.PENDING,
        )
        checkout_session.purchase_id = purchase.id

    base_amount = price.unit_price * checkout_session.quantity
    discount = None
    redemption = None
    if checkout_session.discount_id:
        discount = await Repository(session, Discount).select_by_id(checkout_session.discount_id)
        redemptions = Repository(session, DiscountRedemption)
        redemption = await redemptions.select_one_where(
            DiscountRedemption.purchase_id == purchase.id
        )
        if redemption is None:
            redemption = await redemptions.insert(
                discount_id=discount.id,
                purchase_id=purchase.id,
                discount_code=discount.code,
                discount_amount=discount.amount,
                discount_amount_type=discount.amount_type,
                livemode=checkout_session.livemode,
            )
    discount_amount = discount_amount_for(discount, base_amount)

    fee_calculations = Repository(session, FeeCalculation)
    fee_calculation = await fee_calculations.select_one_where(
        FeeCalculation.checkout_session_id == checkout_session.id
    )
    if fee_calculation is None:
        percentage = Decimal(
            str(
                organization.fee_percentage
                if organization.fee_percentage is not None
                else get_billing_config().fees.platform_fee_percentage
            )
        )
        total_due = base_amount - discount_amount
        fee_calculation = await fee_calculations.insert(
            organization_id=organization.id,
            livemode=checkout_session.livemode,
            checkout_session_id=checkout_session.id,
            purchase_id=purchase.id,
            price_id=price.id,
            discount_id=discount.id if discount else None,
            currency=price.currency,
            base_amount=base_amount,
            discount_amount=discount_amount,
            platform_fee_percentage=percentage,
            platform_fee_amount=platform_fee_for(total_due, percentage),
            total_due_amount=total_due,
        )

    logger.info(
        "Purchase bookkeeping completed",
        checkout_session_id=checkout_session.id,
        purchase_id=purchase.id,
        customer_id=customer.id,
        total_due=fee_calculation.total_due_amount,
    )
    return PurchaseBookkeepingResult(
        customer=customer,
        purchase=purchase,
        fee_calculation=fee_calculation,
        discount_redemption=redemption,
        events=events,
    )


__all__ = [
    "PurchaseBookkeepingResult",
    "discount_amount_for",
    "platform_fee_for",
    "process_purchase_bookkeeping_for_checkout_session",
]
