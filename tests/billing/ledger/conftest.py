"""Builders for hand-assembled ledger states."""

from datetime import datetime
from uuid import uuid4

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.enums import (
    LedgerEntryStatus,
    LedgerEntryType,
    LedgerTransactionType,
    UsageCreditStatus,
    UsageCreditType,
)
from flowledger.platform.billing.ledger.entities import (
    LedgerEntry,
    LedgerTransaction,
    UsageCredit,
    UsageEvent,
)
from flowledger.platform.billing.ledger.store import (
    LedgerEntryInsert,
    LedgerTransactionInsert,
    insert_ledger_entries,
    insert_ledger_transaction,
)
from flowledger.platform.db import utcnow
from tests.billing.factories import MeteredSubscription


class LedgerBuilder:
    """Writes usage events, credits and entries for one metered subscription."""

    def __init__(self, session: AsyncSession, metered: MeteredSubscription) -> None:
        self.session = session
        self.metered = metered
        self.account = metered.ledger_account
        self.subscription = metered.subscription

    async def transaction(
        self, type: LedgerTransactionType = LedgerTransactionType.BILLING_RECALCULATED
    ) -> LedgerTransaction:
        return await insert_ledger_transaction(
            self.session,
            LedgerTransactionInsert(
                organization_id=self.subscription.organization_id,
                livemode=self.subscription.livemode,
                subscription_id=self.subscription.id,
                type=type,
                initiating_source_type="test",
                initiating_source_id=uuid4().hex,
            ),
        )

    async def usage_event(self, amount: int) -> UsageEvent:
        event = UsageEvent(
            organization_id=self.subscription.organization_id,
            livemode=self.subscription.livemode,
            customer_id=self.subscription.customer_id,
            subscription_id=self.subscription.id,
            usage_meter_id=self.metered.usage_meter.id,
            price_id=self.metered.price.id,
            amount=amount,
            usage_date=utcnow(),
            transaction_id=uuid4().hex,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def usage_credit(
        self,
        amount: int,
        *,
        issued_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> UsageCredit:
        credit = UsageCredit(
            organization_id=self.subscription.organization_id,
            livemode=self.subscription.livemode,
            subscription_id=self.subscription.id,
            usage_meter_id=self.metered.usage_meter.id,
            credit_type=UsageCreditType.GRANT,
            status=UsageCreditStatus.POSTED,
            issued_amount=amount,
            issued_at=issued_at or utcnow(),
            expires_at=expires_at,
        )
        self.session.add(credit)
        await self.session.flush()
        return credit

    async def entry(
        self,
        transaction: LedgerTransaction,
        entry_type: LedgerEntryType,
        amount: int,
        status: LedgerEntryStatus = LedgerEntryStatus.POSTED,
        **sources: str,
    ) -> LedgerEntry:
        (entry,) = await insert_ledger_entries(
            self.session,
            transaction.id,
            [
                LedgerEntryInsert(
                    ledger_account_id=self.account.id,
                    entry_type=entry_type,
                    amount=amount,
                    status=status,
                    **sources,
                )
            ],
        )
        return entry

    async def usage_cost(
        self,
        transaction: LedgerTransaction,
        amount: int,
        status: LedgerEntryStatus = LedgerEntryStatus.POSTED,
    ) -> LedgerEntry:
        event = await self.usage_event(amount)
        return await self.entry(
            transaction,
            LedgerEntryType.USAGE_COST,
            amount,
            status,
            source_usage_event_id=event.id,
        )

    async def recognized_credit(
        self,
        transaction: LedgerTransaction,
        amount: int,
        *,
        issued_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> UsageCredit:
        credit = await self.usage_credit(amount, issued_at=issued_at, expires_at=expires_at)
        await self.entry(
            transaction,
            LedgerEntryType.CREDIT_GRANT_RECOGNIZED,
            amount,
            source_usage_credit_id=credit.id,
        )
        return credit


@pytest_asyncio.fixture
async def ledger(async_db_session, metered_subscription) -> LedgerBuilder:
    return LedgerBuilder(async_db_session, metered_subscription)
