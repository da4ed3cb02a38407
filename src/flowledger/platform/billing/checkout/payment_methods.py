"""Payment method records keyed by the provider payment method id."""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import Customer, PaymentMethod
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import ConflictError
from flowledger.platform.billing.gateway import PaymentGateway

logger = structlog.get_logger(__name__)


async def payment_method_for_stripe_payment_method_id(
    session: AsyncSession,
    gateway: PaymentGateway,
    *,
    stripe_payment_method_id: str,
    customer: Customer,
    livemode: bool,
) -> PaymentMethod:
    """Return the stored payment method, creating it from provider details if needed."""
    repo = Repository(session, PaymentMethod)
    existing = await repo.select_one_where(
        PaymentMethod.stripe_payment_method_id == stripe_payment_method_id
    )
    if existing is not None:
        if existing.customer_id != customer.id:
            raise ConflictError(
                "Payment method is attached to another customer",
                context={
                    "stripe_payment_method_id": stripe_payment_method_id,
                    "customer_id": customer.id,
                },
            )
        return existing

    details = await gateway.retrieve_payment_method(stripe_payment_method_id)
    current_default = await repo.select_one_where(
        PaymentMethod.customer_id == customer.id,
        PaymentMethod.livemode == livemode,
        PaymentMethod.default.is_(True),
    )
    payment_method = await repo.insert(
        customer_id=customer.id,
        livemode=livemode,
        type=details.type,
        stripe_payment_method_id=details.id,
        default=current_default is None,
        billing_details=details.billing_details,
        payment_method_data=details.payment_method_data,
    )
    logger.info(
        "Payment method stored",
        payment_method_id=payment_method.id,
        customer_id=customer.id,
        type=details.type.value,
    )
    return payment_method


__all__ = ["payment_method_for_stripe_payment_method_id"]
