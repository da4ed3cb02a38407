"""Tests for subscription query helpers."""

from datetime import timedelta

import pytest

from flowledger.platform.billing.core.enums import (
    SubscriptionCancellationReason,
    SubscriptionStatus,
)
from flowledger.platform.billing.exceptions import LedgerInvariantError, SubscriptionChainError
from flowledger.platform.billing.subscriptions.helpers import (
    calculate_trial_end,
    customer_has_had_trial,
    follow_replacement_chain,
    is_active_paid_subscription,
    safely_update_subscriptions_for_customer_to_new_payment_method,
    select_active_paid_subscriptions_for_customer,
    select_current_subscription_for_customer,
)
from tests.billing.factories import NOW


async def _link(session, *subscriptions):
    for old, new in zip(subscriptions, subscriptions[1:]):
        old.replaced_by_subscription_id = new.id
    await session.flush()


@pytest.mark.unit
class TestCalculateTrialEnd:
    def test_trial_days_added(self):
        assert calculate_trial_end(has_had_trial=False, trial_period_days=14, now=NOW) == (
            NOW + timedelta(days=14)
        )

    def test_no_second_trial(self):
        assert calculate_trial_end(has_had_trial=True, trial_period_days=14, now=NOW) is None

    @pytest.mark.parametrize("days", [None, 0])
    def test_no_trial_configured(self, days):
        assert calculate_trial_end(has_had_trial=False, trial_period_days=days, now=NOW) is None


@pytest.mark.integration
class TestFollowReplacementChain:
    @pytest.mark.asyncio
    async def test_unlinked_subscription_is_its_own_tail(self, subscription_factory, async_db_session):
        subscription = await subscription_factory()
        assert await follow_replacement_chain(async_db_session, subscription) is subscription

    @pytest.mark.asyncio
    async def test_follows_links_to_the_tail(self, async_db_session, subscription_factory):
        first = await subscription_factory(free=True, status=SubscriptionStatus.CANCELED)
        second = await subscription_factory(status=SubscriptionStatus.CANCELED)
        third = await subscription_factory()
        await _link(async_db_session, first, second, third)

        tail = await follow_replacement_chain(async_db_session, first)

        assert tail.id == third.id

    @pytest.mark.asyncio
    async def test_loop_raises_chain_error(self, async_db_session, subscription_factory):
        first = await subscription_factory()
        second = await subscription_factory()
        await _link(async_db_session, first, second, first)

        with pytest.raises(SubscriptionChainError) as exc_info:
            await follow_replacement_chain(async_db_session, first)

        assert isinstance(exc_info.value, LedgerInvariantError)

    @pytest.mark.asyncio
    async def test_hop_limit(self, async_db_session, subscription_factory):
        chain = [await subscription_factory() for _ in range(3)]
        await _link(async_db_session, *chain)

        with pytest.raises(SubscriptionChainError):
            await follow_replacement_chain(async_db_session, chain[0], max_hops=1)
        tail = await follow_replacement_chain(async_db_session, chain[0], max_hops=2)
        assert tail.id == chain[2].id


@pytest.mark.integration
class TestCurrentSubscription:
    @pytest.mark.asyncio
    async def test_upgraded_free_plan_resolves_to_paid(
        self, async_db_session, customer, subscription_factory
    ):
        free = await subscription_factory(
            free=True,
            status=SubscriptionStatus.CANCELED,
            cancellation_reason=SubscriptionCancellationReason.UPGRADED_TO_PAID,
        )
        paid = await subscription_factory()
        await _link(async_db_session, free, paid)

        current = await select_current_subscription_for_customer(async_db_session, customer.id)

        assert current.id == paid.id

    @pytest.mark.asyncio
    async def test_chain_ending_in_canceled_subscription(
        self, async_db_session, customer, subscription_factory
    ):
        free = await subscription_factory(
            free=True,
            status=SubscriptionStatus.CANCELED,
            cancellation_reason=SubscriptionCancellationReason.UPGRADED_TO_PAID,
        )
        paid = await subscription_factory(status=SubscriptionStatus.CANCELED)
        await _link(async_db_session, free, paid)

        assert await select_current_subscription_for_customer(async_db_session, customer.id) is None

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, async_db_session, customer):
        assert await select_current_subscription_for_customer(async_db_session, customer.id) is None

    @pytest.mark.asyncio
    async def test_active_paid_excludes_free_and_upgraded(
        self, async_db_session, customer, subscription_factory
    ):
        await subscription_factory(free=True)
        paid = await subscription_factory()

        active_paid = await select_active_paid_subscriptions_for_customer(
            async_db_session, customer.id
        )

        assert [s.id for s in active_paid] == [paid.id]
        assert is_active_paid_subscription(paid)

    @pytest.mark.asyncio
    async def test_customer_has_had_trial(self, async_db_session, customer, subscription_factory):
        assert await customer_has_had_trial(async_db_session, customer.id) is False
        await subscription_factory(
            status=SubscriptionStatus.CANCELED, trial_end=NOW - timedelta(days=60)
        )
        assert await customer_has_had_trial(async_db_session, customer.id) is True


@pytest.mark.integration
class TestPaymentMethodUpdate:
    @pytest.mark.asyncio
    async def test_credit_trial_subscriptions_are_skipped(
        self, async_db_session, subscription_factory, payment_method_factory
    ):
        active = await subscription_factory()
        credit_trial = await subscription_factory(status=SubscriptionStatus.CREDIT_TRIAL)
        canceled = await subscription_factory(status=SubscriptionStatus.CANCELED)
        payment_method = await payment_method_factory()

        updated = await safely_update_subscriptions_for_customer_to_new_payment_method(
            async_db_session, payment_method
        )

        assert [s.id for s in updated] == [active.id]
        assert active.default_payment_method_id == payment_method.id
        assert credit_trial.default_payment_method_id is None
        assert canceled.default_payment_method_id is None

    @pytest.mark.asyncio
    async def test_already_pointing_at_payment_method(
        self, async_db_session, subscription_factory, payment_method_factory
    ):
        payment_method = await payment_method_factory()
        await subscription_factory(default_payment_method_id=payment_method.id)

        updated = await safely_update_subscriptions_for_customer_to_new_payment_method(
            async_db_session, payment_method
        )

        assert updated == []
