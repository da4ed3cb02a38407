"""Results of setup intent reconciliation, tagged by checkout session type."""

from dataclasses import dataclass, field
from typing import Union

from flowledger.platform.billing.core.entities import (
    BillingRun,
    CheckoutSession,
    Customer,
    Event,
    Organization,
    PaymentMethod,
    Price,
    Product,
    Purchase,
    Subscription,
)
from flowledger.platform.billing.core.enums import CheckoutSessionType


@dataclass
class TerminalCheckoutSessionResult:
    """The checkout session was already finished; nothing was changed."""

    type: CheckoutSessionType
    checkout_session: CheckoutSession
    organization: Organization
    customer: Customer | None
    replayed: bool = True


@dataclass
class AddPaymentMethodResult:
    checkout_session: CheckoutSession
    organization: Organization
    customer: Customer
    payment_method: PaymentMethod
    subscription: Subscription | None = None
    updated_subscriptions: list[Subscription] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    replayed: bool = False
    type: CheckoutSessionType = CheckoutSessionType.ADD_PAYMENT_METHOD


@dataclass
class ActivateSubscriptionResult:
    checkout_session: CheckoutSession
    organization: Organization
    customer: Customer
    subscription: Subscription
    payment_method: PaymentMethod
    billing_run: BillingRun | None = None
    events: list[Event] = field(default_factory=list)
    replayed: bool = False
    type: CheckoutSessionType = CheckoutSessionType.ACTIVATE_SUBSCRIPTION


@dataclass
class SubscriptionCreatingResult:
    """Result of a ``PRODUCT`` or ``PURCHASE`` checkout session."""

    type: CheckoutSessionType
    checkout_session: CheckoutSession
    organization: Organization
    customer: Customer
    price: Price
    product: Product
    subscription: Subscription
    purchase: Purchase | None = None
    payment_method: PaymentMethod | None = None
    billing_run: BillingRun | None = None
    canceled_free_subscription: Subscription | None = None
    events: list[Event] = field(default_factory=list)
    replayed: bool = False


ReconciliationResult = Union[
    TerminalCheckoutSessionResult,
    AddPaymentMethodResult,
    ActivateSubscriptionResult,
    SubscriptionCreatingResult,
]

__all__ = [
    "ActivateSubscriptionResult",
    "AddPaymentMethodResult",
    "ReconciliationResult",
    "SubscriptionCreatingResult",
    "TerminalCheckoutSessionResult",
]
