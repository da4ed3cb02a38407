"""Expose billing fixtures for pytest."""

from tests.billing.factories import (  # noqa: F401
    checkout_session_factory,
    customer,
    customer_factory,
    fake_gateway,
    metered_subscription,
    organization,
    organization_factory,
    payment_method_factory,
    price_factory,
    product_factory,
    subscription_factory,
    usage_meter_factory,
)
