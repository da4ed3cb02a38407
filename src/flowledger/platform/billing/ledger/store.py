"""
Ledger transaction and entry store.

Amounts are stored as positive magnitudes. The direction of an entry is
fixed by its type and recorded on the row; balances add credits and
subtract debits. Each entry type also fixes which source reference column
it must carry.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.enums import (
    LedgerEntryDirection,
    LedgerEntrySource,
    LedgerEntryStatus,
    LedgerEntryType,
    LedgerTransactionType,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import (
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from flowledger.platform.billing.ledger.entities import (
    LedgerAccount,
    LedgerEntry,
    LedgerTransaction,
    UsageCredit,
    UsageEvent,
)
from flowledger.platform.db import utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EntryTypeRule:
    direction: LedgerEntryDirection
    source: LedgerEntrySource


ENTRY_TYPE_RULES: dict[LedgerEntryType, EntryTypeRule] = {
    LedgerEntryType.USAGE_COST: EntryTypeRule(
        LedgerEntryDirection.DEBIT, LedgerEntrySource.USAGE_EVENT
    ),
    LedgerEntryType.CREDIT_GRANT_RECOGNIZED: EntryTypeRule(
        LedgerEntryDirection.CREDIT, LedgerEntrySource.USAGE_CREDIT
    ),
    LedgerEntryType.CREDIT_APPLIED_TO_USAGE: EntryTypeRule(
        LedgerEntryDirection.CREDIT, LedgerEntrySource.USAGE_CREDIT
    ),
    LedgerEntryType.USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE: EntryTypeRule(
        LedgerEntryDirection.DEBIT, LedgerEntrySource.USAGE_CREDIT
    ),
    LedgerEntryType.CREDIT_GRANT_EXPIRED: EntryTypeRule(
        LedgerEntryDirection.DEBIT, LedgerEntrySource.USAGE_CREDIT
    ),
    LedgerEntryType.CREDIT_BALANCE_ADJUSTED: EntryTypeRule(
        LedgerEntryDirection.DEBIT, LedgerEntrySource.USAGE_CREDIT
    ),
    LedgerEntryType.BILLING_ADJUSTMENT: EntryTypeRule(
        LedgerEntryDirection.CREDIT, LedgerEntrySource.BILLING_PERIOD_CALCULATION
    ),
}

_SOURCE_FIELDS: dict[LedgerEntrySource, str] = {
    LedgerEntrySource.USAGE_EVENT: "source_usage_event_id",
    LedgerEntrySource.USAGE_CREDIT: "source_usage_credit_id",
    LedgerEntrySource.BILLING_PERIOD_CALCULATION: "source_billing_period_calculation_id",
}


def direction_for(entry_type: LedgerEntryType) -> LedgerEntryDirection:
    return ENTRY_TYPE_RULES[entry_type].direction


class LedgerTransactionInsert(BaseModel):
    """Parameters for a new ledger transaction."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    livemode: bool
    subscription_id: str
    type: LedgerTransactionType
    initiating_source_type: str | None = None
    initiating_source_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None


class LedgerEntryInsert(BaseModel):
    """One entry to write into an existing ledger transaction."""

    model_config = ConfigDict(frozen=True)

    ledger_account_id: str
    entry_type: LedgerEntryType
    amount: int
    status: LedgerEntryStatus = LedgerEntryStatus.POSTED
    source_usage_event_id: str | None = None
    source_usage_credit_id: str | None = None
    source_billing_period_calculation_id: str | None = None
    billing_period_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = Field(default=None)


def validate_entry_insert(entry: LedgerEntryInsert) -> None:
    """Reject entries that break the sign or source-reference convention."""
    if isinstance(entry.amount, bool) or entry.amount <= 0:
        raise ValidationError(
            "Ledger entry amounts must be positive integers; direction comes from the entry type",
            context={"entry_type": entry.entry_type.value, "amount": entry.amount},
        )

    rule = ENTRY_TYPE_RULES[entry.entry_type]
    required = _SOURCE_FIELDS[rule.source]
    if getattr(entry, required) is None:
        raise ValidationError(
            f"{entry.entry_type.value} entries require {required}",
            context={"entry_type": entry.entry_type.value},
        )
    extra = [
        field
        for field in _SOURCE_FIELDS.values()
        if field != required and getattr(entry, field) is not None
    ]
    if extra:
        raise ValidationError(
            f"{entry.entry_type.value} entries must only reference {required}",
            context={"entry_type": entry.entry_type.value, "unexpected_sources": extra},
        )


# ============================================================================
# Ledger transactions
# ============================================================================


async def find_ledger_transaction_for_source(
    session: AsyncSession,
    *,
    organization_id: str,
    livemode: bool,
    type: LedgerTransactionType,
    initiating_source_type: str,
    initiating_source_id: str,
) -> LedgerTransaction | None:
    return await Repository(session, LedgerTransaction).select_one_where(
        LedgerTransaction.organization_id == organization_id,
        LedgerTransaction.livemode == livemode,
        LedgerTransaction.type == type,
        LedgerTransaction.initiating_source_type == initiating_source_type,
        LedgerTransaction.initiating_source_id == initiating_source_id,
    )


async def insert_ledger_transaction(
    session: AsyncSession, params: LedgerTransactionInsert
) -> LedgerTransaction:
    transaction = await Repository(session, LedgerTransaction).insert(
        organization_id=params.organization_id,
        livemode=params.livemode,
        subscription_id=params.subscription_id,
        type=params.type,
        initiating_source_type=params.initiating_source_type,
        initiating_source_id=params.initiating_source_id,
        description=params.description,
        metadata_json=params.metadata,
    )
    logger.info(
        "Ledger transaction created",
        ledger_transaction_id=transaction.id,
        type=params.type.value,
        subscription_id=params.subscription_id,
        initiating_source_id=params.initiating_source_id,
    )
    return transaction


# ============================================================================
# Ledger entries
# ============================================================================


async def _load_accounts(
    session: AsyncSession, account_ids: set[str]
) -> dict[str, LedgerAccount]:
    accounts = await Repository(session, LedgerAccount).select_where(
        LedgerAccount.id.in_(account_ids)
    )
    by_id = {account.id: account for account in accounts}
    for account_id in account_ids:
        if account_id not in by_id:
            raise NotFoundError("LedgerAccount", account_id)
    return by_id


async def _check_sources(
    session: AsyncSession,
    entries: Sequence[LedgerEntryInsert],
    accounts: dict[str, LedgerAccount],
) -> None:
    usage_event_ids = {e.source_usage_event_id for e in entries if e.source_usage_event_id}
    usage_credit_ids = {e.source_usage_credit_id for e in entries if e.source_usage_credit_id}

    events: dict[str, UsageEvent] = {}
    if usage_event_ids:
        rows = await Repository(session, UsageEvent).select_where(
            UsageEvent.id.in_(usage_event_ids)
        )
        events = {row.id: row for row in rows}
    credits: dict[str, UsageCredit] = {}
    if usage_credit_ids:
        rows = await Repository(session, UsageCredit).select_where(
            UsageCredit.id.in_(usage_credit_ids)
        )
        credits = {row.id: row for row in rows}

    for entry in entries:
        account = accounts[entry.ledger_account_id]
        source: UsageEvent | UsageCredit | None = None
        if entry.source_usage_event_id:
            source = events.get(entry.source_usage_event_id)
            if source is None:
                raise NotFoundError("UsageEvent", entry.source_usage_event_id)
        elif entry.source_usage_credit_id:
            source = credits.get(entry.source_usage_credit_id)
            if source is None:
                raise NotFoundError("UsageCredit", entry.source_usage_credit_id)
        if source is not None and (
            source.subscription_id != account.subscription_id
            or source.usage_meter_id != account.usage_meter_id
        ):
            raise ValidationError(
                "Ledger entry source belongs to a different subscription or usage meter",
                context={"ledger_account_id": account.id, "source_id": source.id},
            )


async def insert_ledger_entries(
    session: AsyncSession,
    ledger_transaction_id: str,
    entries: Iterable[LedgerEntryInsert],
) -> list[LedgerEntry]:
    """Append entries to an existing ledger transaction.

    Raises:
        NotFoundError: transaction, account or source record is missing
        ValidationError: amount or source reference breaks the convention
    """
    entries = list(entries)
    transaction = await Repository(session, LedgerTransaction).select_by_id(ledger_transaction_id)
    if not entries:
        return []

    for entry in entries:
        validate_entry_insert(entry)

    accounts = await _load_accounts(session, {e.ledger_account_id for e in entries})
    for account in accounts.values():
        if (
            account.organization_id != transaction.organization_id
            or account.livemode != transaction.livemode
            or account.subscription_id != transaction.subscription_id
        ):
            raise ValidationError(
                "Ledger account does not belong to the transaction's subscription",
                context={
                    "ledger_account_id": account.id,
                    "ledger_transaction_id": transaction.id,
                },
            )
    await _check_sources(session, entries, accounts)

    now = utcnow()
    rows = []
    for entry in entries:
        account = accounts[entry.ledger_account_id]
        rows.append(
            {
                "ledger_transaction_id": transaction.id,
                "ledger_account_id": account.id,
                "organization_id": account.organization_id,
                "livemode": account.livemode,
                "subscription_id": account.subscription_id,
                "usage_meter_id": account.usage_meter_id,
                "entry_type": entry.entry_type,
                "direction": direction_for(entry.entry_type),
                "amount": entry.amount,
                "status": entry.status,
                "discarded_at": None,
                "entry_timestamp": now,
                "source_usage_event_id": entry.source_usage_event_id,
                "source_usage_credit_id": entry.source_usage_credit_id,
                "source_billing_period_calculation_id": entry.source_billing_period_calculation_id,
                "billing_period_id": entry.billing_period_id,
                "description": entry.description,
                "metadata_json": entry.metadata,
            }
        )
    inserted = await Repository(session, LedgerEntry).insert_many(rows)
    logger.debug(
        "Ledger entries inserted",
        ledger_transaction_id=transaction.id,
        count=len(inserted),
    )
    return inserted


async def select_entries_for_transaction(
    session: AsyncSession, ledger_transaction_id: str
) -> list[LedgerEntry]:
    return await Repository(session, LedgerEntry).select_where(
        LedgerEntry.ledger_transaction_id == ledger_transaction_id,
        order_by=(LedgerEntry.entry_timestamp, LedgerEntry.id),
    )


async def select_pending_entries(
    session: AsyncSession,
    ledger_transaction_id: str,
    entry_types: Sequence[LedgerEntryType] | None = None,
) -> list[LedgerEntry]:
    """Pending, not discarded entries of one ledger transaction."""
    criteria = [
        LedgerEntry.ledger_transaction_id == ledger_transaction_id,
        LedgerEntry.status == LedgerEntryStatus.PENDING,
        LedgerEntry.discarded_at.is_(None),
    ]
    if entry_types:
        criteria.append(LedgerEntry.entry_type.in_(entry_types))
    return await Repository(session, LedgerEntry).select_where(*criteria)


async def discard_pending_entries(
    session: AsyncSession,
    ledger_transaction_id: str,
    entry_types: Sequence[LedgerEntryType] | None = None,
    discarded_at: datetime | None = None,
) -> list[LedgerEntry]:
    """Mark the transaction's pending entries as discarded."""
    entries = await select_pending_entries(session, ledger_transaction_id, entry_types)
    stamp = discarded_at or utcnow()
    for entry in entries:
        entry.discarded_at = stamp
    await session.flush()
    await assert_entry_invariants(session, ledger_transaction_id)
    if entries:
        logger.debug(
            "Pending ledger entries discarded",
            ledger_transaction_id=ledger_transaction_id,
            count=len(entries),
        )
    return entries


async def post_pending_entries(
    session: AsyncSession, ledger_transaction_id: str
) -> list[LedgerEntry]:
    """Post every pending, non-discarded entry of the transaction."""
    entries = await select_pending_entries(session, ledger_transaction_id)
    for entry in entries:
        entry.status = LedgerEntryStatus.POSTED
    await session.flush()
    await assert_entry_invariants(session, ledger_transaction_id)
    logger.debug(
        "Pending ledger entries posted",
        ledger_transaction_id=ledger_transaction_id,
        count=len(entries),
    )
    return entries


async def assert_entry_invariants(session: AsyncSession, ledger_transaction_id: str) -> None:
    """Posted entries never carry discarded_at."""
    result = await session.execute(
        select(func.count(LedgerEntry.id)).where(
            and_(
                LedgerEntry.ledger_transaction_id == ledger_transaction_id,
                LedgerEntry.status == LedgerEntryStatus.POSTED,
                LedgerEntry.discarded_at.is_not(None),
            )
        )
    )
    broken = result.scalar_one()
    if broken:
        raise LedgerInvariantError(
            "Posted ledger entries must not be discarded",
            context={"ledger_transaction_id": ledger_transaction_id, "count": broken},
        )


__all__ = [
    "ENTRY_TYPE_RULES",
    "EntryTypeRule",
    "LedgerEntryInsert",
    "LedgerTransactionInsert",
    "direction_for",
    "validate_entry_insert",
    "find_ledger_transaction_for_source",
    "insert_ledger_transaction",
    "insert_ledger_entries",
    "select_entries_for_transaction",
    "select_pending_entries",
    "discard_pending_entries",
    "post_pending_entries",
    "assert_entry_invariants",
]
