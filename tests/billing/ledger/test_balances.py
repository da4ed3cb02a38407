"""Tests for ledger balance aggregation."""

import pytest

from flowledger.platform.billing.core.enums import (
    BalanceMode,
    LedgerEntryStatus,
    LedgerEntryType,
)
from flowledger.platform.billing.ledger.accounts import ensure_ledger_accounts_for_subscription
from flowledger.platform.billing.ledger.balances import (
    aggregate_available_balance_for_usage_credits,
    aggregate_balance,
    outstanding_usage_cost,
)
from flowledger.platform.billing.ledger.store import discard_pending_entries

pytestmark = pytest.mark.integration


class TestAggregateBalance:
    @pytest.mark.asyncio
    async def test_account_without_entries_has_zero_balance(self, async_db_session, ledger):
        for mode in BalanceMode:
            assert await aggregate_balance(async_db_session, ledger.account.id, mode) == 0

    @pytest.mark.asyncio
    async def test_posted_and_available_modes(self, async_db_session, ledger):
        """Grant 100 posted, usage 100 posted, usage 100 pending."""
        transaction = await ledger.transaction()
        await ledger.recognized_credit(transaction, 100)
        await ledger.usage_cost(transaction, 100)
        await ledger.usage_cost(transaction, 100, LedgerEntryStatus.PENDING)

        account_id = ledger.account.id
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.POSTED) == 0
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.AVAILABLE) == -100

    @pytest.mark.asyncio
    async def test_discarded_pending_entry_leaves_available_balance(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        await ledger.recognized_credit(transaction, 100)
        await ledger.usage_cost(transaction, 40, LedgerEntryStatus.PENDING)
        account_id = ledger.account.id
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.AVAILABLE) == 60

        await discard_pending_entries(async_db_session, transaction.id)

        assert await aggregate_balance(async_db_session, account_id, BalanceMode.AVAILABLE) == 100
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.POSTED) == 100

    @pytest.mark.asyncio
    async def test_conservative_mode_ignores_pending_credits(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        credit = await ledger.usage_credit(50)
        await ledger.entry(
            transaction,
            LedgerEntryType.CREDIT_GRANT_RECOGNIZED,
            50,
            LedgerEntryStatus.PENDING,
            source_usage_credit_id=credit.id,
        )
        await ledger.usage_cost(transaction, 20, LedgerEntryStatus.PENDING)

        account_id = ledger.account.id
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.CONSERVATIVE) == -20
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.AVAILABLE) == 30
        assert await aggregate_balance(async_db_session, account_id, BalanceMode.POSTED) == 0

    @pytest.mark.asyncio
    async def test_mode_accepts_plain_strings(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        await ledger.usage_cost(transaction, 15, LedgerEntryStatus.PENDING)
        assert await aggregate_balance(async_db_session, ledger.account.id, "available") == -15

    @pytest.mark.asyncio
    async def test_other_accounts_are_excluded(
        self, async_db_session, ledger, usage_meter_factory
    ):
        other_meter = await usage_meter_factory(name="Storage")
        (other_account,) = await ensure_ledger_accounts_for_subscription(
            async_db_session, ledger.subscription, [other_meter.id]
        )
        transaction = await ledger.transaction()
        await ledger.usage_cost(transaction, 70)

        assert await aggregate_balance(async_db_session, other_account.id) == 0
        assert await aggregate_balance(async_db_session, ledger.account.id) == -70


class TestOutstandingUsageCost:
    @pytest.mark.asyncio
    async def test_applied_credit_reduces_outstanding_usage(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        credit = await ledger.recognized_credit(transaction, 100)
        await ledger.usage_cost(transaction, 80)
        await ledger.entry(
            transaction,
            LedgerEntryType.CREDIT_APPLIED_TO_USAGE,
            30,
            source_usage_credit_id=credit.id,
        )

        assert await outstanding_usage_cost(async_db_session, ledger.account.id) == 50

    @pytest.mark.asyncio
    async def test_never_negative(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        credit = await ledger.recognized_credit(transaction, 100)
        await ledger.entry(
            transaction,
            LedgerEntryType.CREDIT_APPLIED_TO_USAGE,
            30,
            source_usage_credit_id=credit.id,
        )

        assert await outstanding_usage_cost(async_db_session, ledger.account.id) == 0


class TestUsageCreditBalances:
    @pytest.mark.asyncio
    async def test_remaining_balance_per_credit(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        first = await ledger.recognized_credit(transaction, 100)
        second = await ledger.recognized_credit(transaction, 40)
        for entry_type in (
            LedgerEntryType.CREDIT_APPLIED_TO_USAGE,
            LedgerEntryType.USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE,
        ):
            await ledger.entry(transaction, entry_type, 30, source_usage_credit_id=first.id)

        balances = {
            b.usage_credit_id: b.balance
            for b in await aggregate_available_balance_for_usage_credits(
                async_db_session, ledger.account.id
            )
        }

        assert balances == {first.id: 70, second.id: 40}

    @pytest.mark.asyncio
    async def test_pending_application_debit_reserves_credit(self, async_db_session, ledger):
        transaction = await ledger.transaction()
        credit = await ledger.recognized_credit(transaction, 100)
        await ledger.entry(
            transaction,
            LedgerEntryType.USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE,
            60,
            LedgerEntryStatus.PENDING,
            source_usage_credit_id=credit.id,
        )

        (balance,) = await aggregate_available_balance_for_usage_credits(
            async_db_session, ledger.account.id, [credit.id]
        )
        assert balance.balance == 40
