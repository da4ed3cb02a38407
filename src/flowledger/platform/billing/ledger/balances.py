"""
Balance aggregation for ledger accounts.

Balances are never stored. Each query is a single SELECT so it reads one
snapshot of the entry set.

Modes:
    posted       - posted entries only
    available    - posted entries plus pending entries that are not discarded
    conservative - posted entries plus pending, non-discarded debits
                   (pending credits are ignored)
"""

from dataclasses import dataclass

from sqlalchemy import ColumnElement, and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.enums import (
    BalanceMode,
    LedgerEntryDirection,
    LedgerEntryStatus,
    LedgerEntryType,
)
from flowledger.platform.billing.ledger.entities import LedgerEntry

signed_amount = case(
    (LedgerEntry.direction == LedgerEntryDirection.DEBIT, -LedgerEntry.amount),
    else_=LedgerEntry.amount,
)


def balance_filter(mode: BalanceMode) -> ColumnElement[bool]:
    """Entry status predicate for a balance mode."""
    posted = LedgerEntry.status == LedgerEntryStatus.POSTED
    live_pending = and_(
        LedgerEntry.status == LedgerEntryStatus.PENDING,
        LedgerEntry.discarded_at.is_(None),
    )
    if mode == BalanceMode.POSTED:
        return posted
    if mode == BalanceMode.AVAILABLE:
        return or_(posted, live_pending)
    if mode == BalanceMode.CONSERVATIVE:
        return or_(posted, and_(live_pending, LedgerEntry.direction == LedgerEntryDirection.DEBIT))
    raise ValueError(f"Unknown balance mode: {mode}")


async def aggregate_balance(
    session: AsyncSession,
    ledger_account_id: str,
    mode: BalanceMode = BalanceMode.POSTED,
) -> int:
    """Credits minus debits for the account under ``mode``. 0 when there are no entries."""
    stmt = select(func.coalesce(func.sum(signed_amount), 0)).where(
        LedgerEntry.ledger_account_id == ledger_account_id,
        balance_filter(BalanceMode(mode)),
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def outstanding_usage_cost(
    session: AsyncSession,
    ledger_account_id: str,
    mode: BalanceMode = BalanceMode.AVAILABLE,
) -> int:
    """Usage cost not yet covered by applied credits (never negative)."""
    usage = func.coalesce(
        func.sum(
            case((LedgerEntry.entry_type == LedgerEntryType.USAGE_COST, LedgerEntry.amount), else_=0)
        ),
        0,
    )
    applied = func.coalesce(
        func.sum(
            case(
                (LedgerEntry.entry_type == LedgerEntryType.CREDIT_APPLIED_TO_USAGE, LedgerEntry.amount),
                else_=0,
            )
        ),
        0,
    )
    stmt = select(usage, applied).where(
        LedgerEntry.ledger_account_id == ledger_account_id,
        LedgerEntry.entry_type.in_(
            [LedgerEntryType.USAGE_COST, LedgerEntryType.CREDIT_APPLIED_TO_USAGE]
        ),
        balance_filter(BalanceMode(mode)),
    )
    usage_total, applied_total = (await session.execute(stmt)).one()
    return max(int(usage_total) - int(applied_total), 0)


@dataclass(frozen=True)
class UsageCreditBalance:
    usage_credit_id: str
    balance: int


async def aggregate_available_balance_for_usage_credits(
    session: AsyncSession,
    ledger_account_id: str,
    usage_credit_ids: list[str] | None = None,
) -> list[UsageCreditBalance]:
    """Remaining balance per usage credit on the account.

    Recognized grants add; consumption, expiry and adjustment debits sourced
    by the credit subtract. Pending debits count, pending credits do not, so
    a grant is never promised twice.
    """
    criteria = [
        LedgerEntry.ledger_account_id == ledger_account_id,
        LedgerEntry.source_usage_credit_id.is_not(None),
        # the credit half of an application moves usage, not the grant
        LedgerEntry.entry_type != LedgerEntryType.CREDIT_APPLIED_TO_USAGE,
        balance_filter(BalanceMode.CONSERVATIVE),
    ]
    if usage_credit_ids is not None:
        criteria.append(LedgerEntry.source_usage_credit_id.in_(usage_credit_ids))
    stmt = (
        select(LedgerEntry.source_usage_credit_id, func.sum(signed_amount))
        .where(*criteria)
        .group_by(LedgerEntry.source_usage_credit_id)
        .order_by(LedgerEntry.source_usage_credit_id)
    )
    result = await session.execute(stmt)
    return [
        UsageCreditBalance(usage_credit_id=credit_id, balance=int(total))
        for credit_id, total in result.all()
    ]


__all__ = [
    "UsageCreditBalance",
    "aggregate_balance",
    "aggregate_available_balance_for_usage_credits",
    "balance_filter",
    "outstanding_usage_cost",
    "signed_amount",
]
