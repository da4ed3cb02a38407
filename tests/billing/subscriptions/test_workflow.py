"""Tests for subscription creation and activation."""

from datetime import UTC, datetime, timedelta

import pytest

from flowledger.platform.billing.core.enums import (
    BillingRunStatus,
    FlowEventType,
    IntervalUnit,
    PriceType,
    SubscriptionStatus,
)
from flowledger.platform.billing.exceptions import ValidationError
from flowledger.platform.billing.subscriptions.workflow import (
    CreateSubscriptionParams,
    activate_subscription,
    add_interval,
    create_subscription_workflow,
)
from tests.billing.factories import NOW


@pytest.mark.unit
class TestAddInterval:
    def test_month_end_is_clamped(self):
        start = datetime(2026, 1, 31, tzinfo=UTC)
        assert add_interval(start, IntervalUnit.MONTH, 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_leap_day_yearly(self):
        start = datetime(2028, 2, 29, tzinfo=UTC)
        assert add_interval(start, IntervalUnit.YEAR, 1) == datetime(2029, 2, 28, tzinfo=UTC)

    def test_months_roll_over_year(self):
        start = datetime(2026, 11, 15, tzinfo=UTC)
        assert add_interval(start, IntervalUnit.MONTH, 3) == datetime(2027, 2, 15, tzinfo=UTC)

    @pytest.mark.parametrize(
        ("unit", "count", "expected"),
        [
            (IntervalUnit.DAY, 10, NOW + timedelta(days=10)),
            (IntervalUnit.WEEK, 2, NOW + timedelta(weeks=2)),
        ],
    )
    def test_fixed_length_units(self, unit, count, expected):
        assert add_interval(NOW, unit, count) == expected


@pytest.fixture
def subscription_params(organization, customer, product_factory, price_factory):
    async def _build(price_kwargs=None, **kwargs):
        product = await product_factory()
        price = await price_factory(product=product, **(price_kwargs or {}))
        return CreateSubscriptionParams(
            organization=organization,
            customer=customer,
            price=price,
            product=product,
            livemode=customer.livemode,
            start_date=kwargs.pop("start_date", NOW),
            interval=price.interval_unit,
            interval_count=price.interval_count,
            **kwargs,
        )

    return _build


@pytest.mark.integration
class TestCreateSubscriptionWorkflow:
    @pytest.mark.asyncio
    async def test_trial_subscription(self, async_db_session, subscription_params):
        trial_end = NOW + timedelta(days=14)
        params = await subscription_params(trial_end=trial_end)

        result = await create_subscription_workflow(async_db_session, params)

        assert result.subscription.status == SubscriptionStatus.TRIALING
        assert result.billing_period.trial_period is True
        assert result.billing_period.end_date == trial_end
        assert result.billing_run is None
        assert [e.type for e in result.events] == [FlowEventType.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_paid_subscription_schedules_billing_run(
        self, async_db_session, subscription_params, payment_method_factory
    ):
        payment_method = await payment_method_factory()
        params = await subscription_params(default_payment_method=payment_method)

        result = await create_subscription_workflow(async_db_session, params)

        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.is_free_plan is False
        assert subscription.default_payment_method_id == payment_method.id
        assert subscription.current_billing_period_end == datetime(2026, 4, 1, 12, tzinfo=UTC)
        assert result.billing_run.status == BillingRunStatus.SCHEDULED
        assert result.billing_run.billing_period_id == result.billing_period.id
        (item,) = result.subscription_items
        assert item.unit_price == 2500

    @pytest.mark.asyncio
    async def test_free_plan_never_schedules_billing_run(
        self, async_db_session, subscription_params, payment_method_factory
    ):
        payment_method = await payment_method_factory()
        params = await subscription_params(
            price_kwargs={"unit_price": 0}, default_payment_method=payment_method
        )

        result = await create_subscription_workflow(async_db_session, params)

        assert result.subscription.is_free_plan is True
        assert result.billing_run is None

    @pytest.mark.asyncio
    async def test_usage_price_provisions_ledger_account(
        self, async_db_session, subscription_params, usage_meter_factory
    ):
        meter = await usage_meter_factory()
        params = await subscription_params(
            price_kwargs={"type": PriceType.USAGE, "unit_price": 1, "usage_meter_id": meter.id}
        )

        result = await create_subscription_workflow(async_db_session, params)

        (account,) = result.ledger_accounts
        assert account.subscription_id == result.subscription.id
        assert account.usage_meter_id == meter.id
        assert result.subscription_items[0].usage_meter_id == meter.id

    @pytest.mark.asyncio
    async def test_preserved_billing_period(self, async_db_session, subscription_params):
        period_start = NOW - timedelta(days=10)
        period_end = NOW + timedelta(days=20)
        params = await subscription_params(
            billing_cycle_anchor_date=period_start,
            preserved_billing_period_start=period_start,
            preserved_billing_period_end=period_end,
            prorate_first_period=True,
        )

        result = await create_subscription_workflow(async_db_session, params)

        subscription = result.subscription
        assert subscription.billing_cycle_anchor_date == period_start
        assert subscription.current_billing_period_start == period_start
        assert subscription.current_billing_period_end == period_end
        assert result.billing_period.proration_period is True

    @pytest.mark.asyncio
    async def test_incomplete_without_auto_start(self, async_db_session, subscription_params):
        params = await subscription_params(auto_start=False)

        result = await create_subscription_workflow(async_db_session, params)

        assert result.subscription.status == SubscriptionStatus.INCOMPLETE
        assert result.billing_period is None
        assert result.billing_run is None

    @pytest.mark.asyncio
    async def test_price_of_another_product(
        self, async_db_session, subscription_params, product_factory
    ):
        params = await subscription_params()
        params.product = await product_factory()

        with pytest.raises(ValidationError):
            await create_subscription_workflow(async_db_session, params)

    @pytest.mark.asyncio
    async def test_payment_method_of_another_customer(
        self, async_db_session, subscription_params, customer_factory, payment_method_factory
    ):
        stranger = await customer_factory()
        payment_method = await payment_method_factory(customer=stranger)
        params = await subscription_params(default_payment_method=payment_method)

        with pytest.raises(ValidationError):
            await create_subscription_workflow(async_db_session, params)


@pytest.mark.integration
class TestActivateSubscription:
    @pytest.mark.asyncio
    async def test_activates_incomplete_subscription(
        self, async_db_session, subscription_params, payment_method_factory
    ):
        created = await create_subscription_workflow(
            async_db_session, await subscription_params(auto_start=False)
        )
        payment_method = await payment_method_factory()

        result = await activate_subscription(
            async_db_session, created.subscription, payment_method, now=NOW
        )

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.default_payment_method_id == payment_method.id
        assert result.billing_period.end_date == datetime(2026, 4, 1, 12, tzinfo=UTC)
        assert result.billing_run.payment_method_id == payment_method.id

    @pytest.mark.asyncio
    async def test_trialing_activation_has_no_billing_run(
        self, async_db_session, subscription_factory, payment_method_factory
    ):
        subscription = await subscription_factory(
            status=SubscriptionStatus.INCOMPLETE, trial_end=NOW + timedelta(days=7)
        )
        payment_method = await payment_method_factory()

        result = await activate_subscription(
            async_db_session, subscription, payment_method, now=NOW
        )

        assert result.subscription.status == SubscriptionStatus.TRIALING
        assert result.billing_period.trial_period is True
        assert result.billing_run is None

    @pytest.mark.asyncio
    async def test_only_incomplete_subscriptions(
        self, async_db_session, subscription_factory, payment_method_factory
    ):
        subscription = await subscription_factory()
        payment_method = await payment_method_factory()

        with pytest.raises(ValidationError):
            await activate_subscription(async_db_session, subscription, payment_method)

    @pytest.mark.asyncio
    async def test_payment_method_of_another_customer(
        self, async_db_session, subscription_factory, customer_factory, payment_method_factory
    ):
        subscription = await subscription_factory(status=SubscriptionStatus.INCOMPLETE)
        payment_method = await payment_method_factory(customer=await customer_factory())

        with pytest.raises(ValidationError):
            await activate_subscription(async_db_session, subscription, payment_method, now=NOW)
