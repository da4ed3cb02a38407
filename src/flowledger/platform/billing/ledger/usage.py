"""
Usage ingestion and usage credit grants.

Usage events are deduplicated by ``(transaction_id, usage_meter_id)``: a
redelivered event returns the record (and ledger transaction) created the
first time. Reusing a transaction id for another subscription is a
conflict.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import BillingPeriod, Price, Subscription
from flowledger.platform.billing.core.enums import PriceType, UsageCreditStatus, UsageCreditType
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import ConflictError, ValidationError
from flowledger.platform.billing.ledger.accounts import select_ledger_account
from flowledger.platform.billing.ledger.commands import (
    CreditGrantRecognizedCommand,
    LedgerCommandResult,
    LedgerManager,
    UsageEventProcessedCommand,
)
from flowledger.platform.billing.ledger.entities import UsageCredit, UsageEvent
from flowledger.platform.billing.result import returns_result
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)


class UsageEventInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    price_id: str
    amount: int
    transaction_id: str
    usage_date: datetime | None = None
    billing_period_id: str | None = None
    properties: dict[str, Any] | None = None


@dataclass
class UsageIngestionResult:
    usage_event: UsageEvent
    ledger: LedgerCommandResult
    replayed: bool = False


async def _billing_period_for(
    session: AsyncSession, subscription_id: str, usage_date: datetime
) -> BillingPeriod | None:
    return await Repository(session, BillingPeriod).select_one_where(
        BillingPeriod.subscription_id == subscription_id,
        BillingPeriod.start_date <= usage_date,
        BillingPeriod.end_date > usage_date,
    )


async def _ingest_usage_event(
    session: AsyncSession, params: UsageEventInput
) -> UsageIngestionResult:
    subscription = await Repository(session, Subscription).select_by_id(params.subscription_id)
    price = await Repository(session, Price).select_by_id(params.price_id)
    if price.type != PriceType.USAGE or price.usage_meter_id is None:
        raise ValidationError(
            "Usage events require a usage price with a usage meter",
            context={"price_id": price.id, "price_type": price.type.value},
        )
    if isinstance(params.amount, bool) or params.amount <= 0:
        raise ValidationError(
            "Usage event amount must be a positive integer", context={"amount": params.amount}
        )

    existing = await Repository(session, UsageEvent).select_one_where(
        UsageEvent.transaction_id == params.transaction_id,
        UsageEvent.usage_meter_id == price.usage_meter_id,
    )
    if existing is not None:
        if existing.subscription_id != subscription.id:
            raise ConflictError(
                "Usage event transaction id already used by another subscription",
                context={
                    "transaction_id": params.transaction_id,
                    "usage_event_id": existing.id,
                },
            )
        ledger = await LedgerManager(session).execute(
            UsageEventProcessedCommand(
                organization_id=existing.organization_id,
                livemode=existing.livemode,
                subscription_id=existing.subscription_id,
                usage_event_id=existing.id,
            )
        )
        logger.info(
            "Usage event already ingested",
            usage_event_id=existing.id,
            transaction_id=params.transaction_id,
        )
        return UsageIngestionResult(existing, ledger, replayed=True)

    # the ledger account must exist before anything is written
    await select_ledger_account(session, subscription.id, price.usage_meter_id)

    usage_date = params.usage_date or utcnow()
    billing_period_id = params.billing_period_id
    if billing_period_id is None:
        period = await _billing_period_for(session, subscription.id, usage_date)
        billing_period_id = period.id if period else None

    usage_event = await Repository(session, UsageEvent).insert(
        organization_id=subscription.organization_id,
        livemode=subscription.livemode,
        customer_id=subscription.customer_id,
        subscription_id=subscription.id,
        usage_meter_id=price.usage_meter_id,
        price_id=price.id,
        billing_period_id=billing_period_id,
        amount=params.amount,
        usage_date=usage_date,
        transaction_id=params.transaction_id,
        properties=params.properties,
    )
    ledger = await LedgerManager(session).execute(
        UsageEventProcessedCommand(
            organization_id=subscription.organization_id,
            livemode=subscription.livemode,
            subscription_id=subscription.id,
            usage_event_id=usage_event.id,
        )
    )
    logger.info(
        "Usage event ingested",
        usage_event_id=usage_event.id,
        subscription_id=subscription.id,
        amount=params.amount,
        credit_applied=sum(a.amount for a in ledger.credit_applications),
    )
    return UsageIngestionResult(usage_event, ledger)


@returns_result
async def ingest_usage_event(
    session: AsyncSession, params: UsageEventInput
) -> UsageIngestionResult:
    """Record a usage event and run it through the ledger; all or nothing."""
    async with session.begin_nested():
        return await _ingest_usage_event(session, params)


@dataclass
class UsageCreditGrant:
    usage_credit: UsageCredit
    ledger: LedgerCommandResult


async def _grant_usage_credit(
    session: AsyncSession,
    *,
    subscription_id: str,
    usage_meter_id: str,
    amount: int,
    credit_type: UsageCreditType = UsageCreditType.GRANT,
    expires_at: datetime | None = None,
    issued_at: datetime | None = None,
    billing_period_id: str | None = None,
    source_reference_id: str | None = None,
    apply_to_outstanding_usage: bool = False,
) -> UsageCreditGrant:
    subscription = await Repository(session, Subscription).select_by_id(subscription_id)
    await select_ledger_account(session, subscription.id, usage_meter_id)
    if isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Usage credit amount must be positive", context={"amount": amount})

    usage_credit = await Repository(session, UsageCredit).insert(
        organization_id=subscription.organization_id,
        livemode=subscription.livemode,
        subscription_id=subscription.id,
        usage_meter_id=usage_meter_id,
        credit_type=credit_type,
        status=UsageCreditStatus.POSTED,
        issued_amount=amount,
        issued_at=issued_at or utcnow(),
        expires_at=expires_at,
        billing_period_id=billing_period_id,
        source_reference_id=source_reference_id,
    )
    ledger = await LedgerManager(session).execute(
        CreditGrantRecognizedCommand(
            organization_id=subscription.organization_id,
            livemode=subscription.livemode,
            subscription_id=subscription.id,
            usage_credit_id=usage_credit.id,
            apply_to_outstanding_usage=apply_to_outstanding_usage,
        )
    )
    logger.info(
        "Usage credit granted",
        usage_credit_id=usage_credit.id,
        subscription_id=subscription.id,
        credit_type=credit_type.value,
        amount=amount,
    )
    return UsageCreditGrant(usage_credit, ledger)


@returns_result
async def grant_usage_credit(
    session: AsyncSession,
    *,
    subscription_id: str,
    usage_meter_id: str,
    amount: int,
    credit_type: UsageCreditType = UsageCreditType.GRANT,
    expires_at: datetime | None = None,
    issued_at: datetime | None = None,
    billing_period_id: str | None = None,
    source_reference_id: str | None = None,
    apply_to_outstanding_usage: bool = False,
) -> UsageCreditGrant:
    """Issue a usage credit and recognize it on the ledger."""
    async with session.begin_nested():
        return await _grant_usage_credit(
            session,
            subscription_id=subscription_id,
            usage_meter_id=usage_meter_id,
            amount=amount,
            credit_type=credit_type,
            expires_at=expires_at,
            issued_at=issued_at,
            billing_period_id=billing_period_id,
            source_reference_id=source_reference_id,
            apply_to_outstanding_usage=apply_to_outstanding_usage,
        )


__all__ = [
    "UsageCreditGrant",
    "UsageEventInput",
    "UsageIngestionResult",
    "grant_usage_credit",
    "ingest_usage_event",
]
