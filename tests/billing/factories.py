"""
Reusable test data factories for billing tests.

These factories create real database records, so tests run against the
same constraints as production code. All factories flush instead of
commit; ``async_db_session`` rolls everything back at teardown.

Usage:
    async def test_upgrade(customer_factory, subscription_factory):
        customer = await customer_factory()
        subscription = await subscription_factory(customer=customer, free=True)
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.checkout.intents import SetupIntent
from flowledger.platform.billing.core.entities import (
    CheckoutSession,
    Customer,
    Organization,
    PaymentMethod,
    Price,
    Product,
    Subscription,
    SubscriptionItem,
    UsageMeter,
)
from flowledger.platform.billing.core.enums import (
    CheckoutSessionStatus,
    CheckoutSessionType,
    IntervalUnit,
    PaymentMethodType,
    PriceType,
    SubscriptionStatus,
)
from flowledger.platform.billing.gateway import PaymentMethodDetails
from flowledger.platform.billing.ledger.accounts import ensure_ledger_accounts_for_subscription
from flowledger.platform.billing.ledger.entities import LedgerAccount

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _short() -> str:
    return uuid4().hex[:8]


# ============================================================================
# Fake payment gateway
# ============================================================================


@dataclass
class FakeGateway:
    """In-memory stand-in for the Stripe gateway."""

    payment_methods: dict[str, PaymentMethodDetails] = field(default_factory=dict)
    retrieved_payment_methods: list[str] = field(default_factory=list)

    async def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethodDetails:
        self.retrieved_payment_methods.append(payment_method_id)
        return self.payment_methods.get(
            payment_method_id,
            PaymentMethodDetails(
                id=payment_method_id,
                type=PaymentMethodType.CARD,
                billing_details={"email": "billing@test.example.com"},
                payment_method_data={"brand": "visa", "last4": "4242"},
            ),
        )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


def make_setup_intent(
    checkout_session: CheckoutSession,
    *,
    setup_intent_id: str | None = None,
    status: str = "succeeded",
    payment_method: str | None = "pm_card_visa",
    customer: str | None = "cus_test",
) -> SetupIntent:
    return SetupIntent(
        id=setup_intent_id or f"seti_{_short()}",
        status=status,
        metadata={"type": "checkout_session", "checkoutSessionId": checkout_session.id},
        customer=customer,
        payment_method=payment_method,
        livemode=checkout_session.livemode,
    )


# ============================================================================
# Organization / customer factories
# ============================================================================


@pytest_asyncio.fixture
async def organization_factory(async_db_session: AsyncSession):
    async def _create(**kwargs):
        organization = Organization(name=kwargs.pop("name", f"Org {_short()}"), **kwargs)
        async_db_session.add(organization)
        await async_db_session.flush()
        return organization

    yield _create


@pytest_asyncio.fixture
async def organization(organization_factory):
    return await organization_factory()


@pytest_asyncio.fixture
async def customer_factory(async_db_session: AsyncSession, organization: Organization):
    async def _create(org: Organization | None = None, **kwargs):
        org = org or organization
        customer = Customer(
            organization_id=org.id,
            livemode=kwargs.pop("livemode", True),
            external_id=kwargs.pop("external_id", f"ext_{_short()}"),
            email=kwargs.pop("email", f"customer-{_short()}@test.example.com"),
            name=kwargs.pop("name", "Test Customer"),
            **kwargs,
        )
        async_db_session.add(customer)
        await async_db_session.flush()
        return customer

    yield _create


@pytest_asyncio.fixture
async def customer(customer_factory):
    return await customer_factory()


# ============================================================================
# Catalog factories
# ============================================================================


@pytest_asyncio.fixture
async def usage_meter_factory(async_db_session: AsyncSession, organization: Organization):
    async def _create(**kwargs):
        meter = UsageMeter(
            organization_id=organization.id,
            livemode=kwargs.pop("livemode", True),
            name=kwargs.pop("name", "API calls"),
            slug=kwargs.pop("slug", f"api-calls-{_short()}"),
            **kwargs,
        )
        async_db_session.add(meter)
        await async_db_session.flush()
        return meter

    yield _create


@pytest_asyncio.fixture
async def product_factory(async_db_session: AsyncSession, organization: Organization):
    async def _create(**kwargs):
        product = Product(
            organization_id=organization.id,
            livemode=kwargs.pop("livemode", True),
            name=kwargs.pop("name", f"Product {_short()}"),
            **kwargs,
        )
        async_db_session.add(product)
        await async_db_session.flush()
        return product

    yield _create


@pytest_asyncio.fixture
async def price_factory(async_db_session: AsyncSession, product_factory):
    """Monthly subscription price; pass ``unit_price=0`` for a free plan."""

    async def _create(product: Product | None = None, **kwargs):
        product = product or await product_factory()
        price = Price(
            product_id=product.id,
            livemode=kwargs.pop("livemode", True),
            type=kwargs.pop("type", PriceType.SUBSCRIPTION),
            unit_price=kwargs.pop("unit_price", 2500),
            currency=kwargs.pop("currency", "USD"),
            interval_unit=kwargs.pop("interval_unit", IntervalUnit.MONTH),
            interval_count=kwargs.pop("interval_count", 1),
            **kwargs,
        )
        async_db_session.add(price)
        await async_db_session.flush()
        return price

    yield _create


# ============================================================================
# Subscription factories
# ============================================================================


@pytest_asyncio.fixture
async def subscription_factory(async_db_session: AsyncSession, customer, price_factory):
    async def _create(
        customer: Customer = customer,
        price: Price | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        free: bool = False,
        **kwargs,
    ):
        price = price or await price_factory(unit_price=0 if free else 2500)
        period_start = kwargs.pop("current_billing_period_start", NOW - timedelta(days=10))
        subscription = Subscription(
            organization_id=customer.organization_id,
            livemode=customer.livemode,
            customer_id=customer.id,
            price_id=price.id,
            status=status,
            is_free_plan=free,
            start_date=kwargs.pop("start_date", period_start),
            interval=kwargs.pop("interval", IntervalUnit.MONTH),
            interval_count=kwargs.pop("interval_count", 1),
            billing_cycle_anchor_date=kwargs.pop("billing_cycle_anchor_date", period_start),
            current_billing_period_start=period_start,
            current_billing_period_end=kwargs.pop(
                "current_billing_period_end", period_start + timedelta(days=30)
            ),
            **kwargs,
        )
        async_db_session.add(subscription)
        await async_db_session.flush()
        async_db_session.add(
            SubscriptionItem(
                subscription_id=subscription.id,
                price_id=price.id,
                quantity=1,
                unit_price=price.unit_price,
                usage_meter_id=price.usage_meter_id,
                added_date=subscription.start_date,
                livemode=subscription.livemode,
            )
        )
        await async_db_session.flush()
        return subscription

    yield _create


@pytest_asyncio.fixture
async def payment_method_factory(async_db_session: AsyncSession, customer):
    async def _create(customer: Customer = customer, **kwargs):
        payment_method = PaymentMethod(
            customer_id=customer.id,
            livemode=customer.livemode,
            type=kwargs.pop("type", PaymentMethodType.CARD),
            stripe_payment_method_id=kwargs.pop("stripe_payment_method_id", f"pm_{_short()}"),
            default=kwargs.pop("default", False),
            **kwargs,
        )
        async_db_session.add(payment_method)
        await async_db_session.flush()
        return payment_method

    yield _create


@pytest_asyncio.fixture
async def checkout_session_factory(async_db_session: AsyncSession, customer):
    async def _create(
        type: CheckoutSessionType = CheckoutSessionType.PRODUCT,
        customer: Customer | None = customer,
        **kwargs,
    ):
        checkout_session = CheckoutSession(
            organization_id=kwargs.pop("organization_id", customer.organization_id if customer else None),
            livemode=kwargs.pop("livemode", True),
            type=type,
            status=kwargs.pop("status", CheckoutSessionStatus.OPEN),
            customer_id=customer.id if customer else None,
            quantity=kwargs.pop("quantity", 1),
            **kwargs,
        )
        async_db_session.add(checkout_session)
        await async_db_session.flush()
        return checkout_session

    yield _create


# ============================================================================
# Ledger
# ============================================================================


@dataclass
class MeteredSubscription:
    subscription: Subscription
    usage_meter: UsageMeter
    price: Price
    ledger_account: LedgerAccount


@pytest_asyncio.fixture
async def metered_subscription(
    async_db_session: AsyncSession,
    usage_meter_factory,
    price_factory,
    subscription_factory,
) -> MeteredSubscription:
    """Subscription on a usage price with its ledger account provisioned."""
    meter = await usage_meter_factory()
    price = await price_factory(type=PriceType.USAGE, unit_price=1, usage_meter_id=meter.id)
    subscription = await subscription_factory(price=price)
    (account,) = await ensure_ledger_accounts_for_subscription(
        async_db_session, subscription, [meter.id]
    )
    return MeteredSubscription(subscription, meter, price, account)
