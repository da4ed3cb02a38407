"""
Payment provider gateway.

Reconciliation only reads payment methods from the provider; the setup
intent itself arrives in the verified webhook payload. ``PaymentGateway``
is the seam; ``StripePaymentGateway`` implements it with the Stripe SDK,
running blocking SDK calls in a worker thread.
"""

from typing import Any, Protocol

import anyio.to_thread
import stripe
import structlog
from pydantic import BaseModel, ConfigDict, Field

from flowledger.platform.billing.config import StripeConfig, get_billing_config
from flowledger.platform.billing.core.enums import PaymentMethodType
from flowledger.platform.billing.exceptions import BillingError, PaymentGatewayError

logger = structlog.get_logger(__name__)


class PaymentMethodDetails(BaseModel):
    """Provider payment method as needed to store a ``PaymentMethod`` row."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    type: PaymentMethodType = PaymentMethodType.OTHER
    customer: str | None = None
    billing_details: dict[str, Any] = Field(default_factory=dict)
    payment_method_data: dict[str, Any] = Field(default_factory=dict)


class PaymentGateway(Protocol):
    async def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethodDetails: ...


def _payment_method_type(value: str | None) -> PaymentMethodType:
    try:
        return PaymentMethodType(value or "")
    except ValueError:
        return PaymentMethodType.OTHER


def stripe_object_to_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripePaymentGateway:
    """Stripe-backed gateway."""

    def __init__(self, api_key: str, api_version: str | None = None) -> None:
        self.api_key = api_key
        self.api_version = api_version

    @classmethod
    def from_config(cls, config: StripeConfig | None = None) -> "StripePaymentGateway":
        config = config or get_billing_config().stripe
        if config is None:
            raise BillingError(
                "Stripe is not configured",
                "BILLING_CONFIGURATION_ERROR",
                status_code=500,
                recovery_hint="Set BILLING__STRIPE_API_KEY",
            )
        return cls(api_key=config.api_key, api_version=config.api_version)

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    async def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethodDetails:
        try:
            payment_method = await anyio.to_thread.run_sync(
                lambda: stripe.PaymentMethod.retrieve(payment_method_id, **self._request_options())
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe payment method retrieval failed",
                payment_method_id=payment_method_id,
                error=str(exc),
            )
            raise PaymentGatewayError(
                "Could not retrieve payment method", payment_method_id=payment_method_id
            ) from exc

        data = stripe_object_to_dict(payment_method)
        method_type = data.get("type")
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return PaymentMethodDetails(
            id=data["id"],
            type=_payment_method_type(method_type),
            customer=customer,
            billing_details=stripe_object_to_dict(data.get("billing_details")),
            payment_method_data=stripe_object_to_dict(data.get(method_type)) if method_type else {},
        )


__all__ = [
    "PaymentGateway",
    "PaymentMethodDetails",
    "StripePaymentGateway",
    "stripe_object_to_dict",
]
