"""
Credit application.

Allocates usage credits against outstanding usage cost on one ledger
account. Each allocation is written as a pending pair of entries sourced by
the usage credit:

* ``CREDIT_APPLIED_TO_USAGE`` (credit) - covers usage cost
* ``USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE`` (debit) - consumes the grant

Re-running ``apply`` inside the same ledger transaction discards the pairs
from the previous pass before computing new ones, so a grant is never
applied twice. ``finalize`` posts whatever pending entries remain.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import MAXYEAR, UTC, datetime
from typing import Any

import structlog
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.config import get_billing_config
from flowledger.platform.billing.core.enums import (
    BalanceMode,
    LedgerEntryStatus,
    LedgerEntryType,
    UsageCreditStatus,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import ValidationError
from flowledger.platform.billing.ledger.balances import (
    aggregate_available_balance_for_usage_credits,
    outstanding_usage_cost,
)
from flowledger.platform.billing.ledger.entities import (
    LedgerAccount,
    LedgerEntry,
    LedgerTransaction,
    UsageCredit,
    UsageEvent,
)
from flowledger.platform.billing.ledger.store import (
    LedgerEntryInsert,
    discard_pending_entries,
    insert_ledger_entries,
    post_pending_entries,
)
from flowledger.platform.db import utcnow
from flowledger.platform.settings import CreditOrdering

logger = structlog.get_logger(__name__)

APPLICATION_ENTRY_TYPES = (
    LedgerEntryType.CREDIT_APPLIED_TO_USAGE,
    LedgerEntryType.USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE,
)

_FAR_FUTURE = datetime(MAXYEAR, 12, 31, tzinfo=UTC)


@dataclass(frozen=True)
class EligibleCredit:
    usage_credit: UsageCredit
    remaining: int


CreditSortKey = Callable[[EligibleCredit], Any]


def oldest_first(credit: EligibleCredit) -> Any:
    return (credit.usage_credit.issued_at, credit.usage_credit.id)


def expiring_first(credit: EligibleCredit) -> Any:
    usage_credit = credit.usage_credit
    return (usage_credit.expires_at or _FAR_FUTURE, usage_credit.issued_at, usage_credit.id)


CREDIT_ORDERINGS: dict[CreditOrdering, CreditSortKey] = {
    CreditOrdering.OLDEST_FIRST: oldest_first,
    CreditOrdering.EXPIRING_FIRST: expiring_first,
}


def default_sort_key() -> CreditSortKey:
    return CREDIT_ORDERINGS[get_billing_config().ledger.credit_ordering]


@dataclass
class CreditApplication:
    usage_credit_id: str
    amount: int
    entries: list[LedgerEntry] = field(default_factory=list)


async def select_eligible_credits(
    session: AsyncSession,
    ledger_account: LedgerAccount,
    as_of: datetime,
) -> list[EligibleCredit]:
    """Posted, unexpired usage credits of the account with a positive remaining balance."""
    credits = await Repository(session, UsageCredit).select_where(
        UsageCredit.subscription_id == ledger_account.subscription_id,
        UsageCredit.usage_meter_id == ledger_account.usage_meter_id,
        UsageCredit.status == UsageCreditStatus.POSTED,
        or_(UsageCredit.expires_at.is_(None), UsageCredit.expires_at > as_of),
    )
    if not credits:
        return []
    balances = {
        b.usage_credit_id: b.balance
        for b in await aggregate_available_balance_for_usage_credits(
            session, ledger_account.id, [c.id for c in credits]
        )
    }
    return [
        EligibleCredit(usage_credit=credit, remaining=balances[credit.id])
        for credit in credits
        if balances.get(credit.id, 0) > 0
    ]


class CreditApplicationRun:
    """Credit application inside one ledger transaction."""

    def __init__(
        self,
        session: AsyncSession,
        ledger_transaction: LedgerTransaction,
        ledger_account: LedgerAccount,
        *,
        sort_key: CreditSortKey | None = None,
        now: datetime | None = None,
    ) -> None:
        if ledger_account.subscription_id != ledger_transaction.subscription_id:
            raise ValidationError(
                "Ledger account and transaction belong to different subscriptions",
                context={
                    "ledger_account_id": ledger_account.id,
                    "ledger_transaction_id": ledger_transaction.id,
                },
            )
        self.session = session
        self.ledger_transaction = ledger_transaction
        self.ledger_account = ledger_account
        self.sort_key = sort_key or default_sort_key()
        self.now = now or utcnow()
        self.passes = 0

    @classmethod
    async def start(
        cls,
        session: AsyncSession,
        ledger_transaction_id: str,
        ledger_account_id: str,
        **kwargs: Any,
    ) -> "CreditApplicationRun":
        """Load transaction and account, raising NotFoundError when either is missing."""
        transaction = await Repository(session, LedgerTransaction).select_by_id(
            ledger_transaction_id
        )
        account = await Repository(session, LedgerAccount).select_by_id(ledger_account_id)
        return cls(session, transaction, account, **kwargs)

    async def apply(self, usage_event_id: str | None = None) -> list[CreditApplication]:
        """Cover outstanding usage with eligible credits as pending entries."""
        if usage_event_id is not None:
            await Repository(self.session, UsageEvent).select_by_id(usage_event_id)

        superseded = await discard_pending_entries(
            self.session,
            self.ledger_transaction.id,
            entry_types=APPLICATION_ENTRY_TYPES,
            discarded_at=self.now,
        )
        self.passes += 1

        need = await outstanding_usage_cost(
            self.session, self.ledger_account.id, BalanceMode.AVAILABLE
        )
        applications: list[CreditApplication] = []
        if need <= 0:
            self._log_pass(applications, need, len(superseded))
            return applications

        eligible = sorted(
            await select_eligible_credits(self.session, self.ledger_account, self.now),
            key=self.sort_key,
        )
        entries: list[LedgerEntryInsert] = []
        for credit in eligible:
            if need <= 0:
                break
            amount = min(credit.remaining, need)
            need -= amount
            applications.append(CreditApplication(credit.usage_credit.id, amount))
            metadata = {"usage_event_id": usage_event_id} if usage_event_id else None
            for entry_type in APPLICATION_ENTRY_TYPES:
                entries.append(
                    LedgerEntryInsert(
                        ledger_account_id=self.ledger_account.id,
                        entry_type=entry_type,
                        amount=amount,
                        status=LedgerEntryStatus.PENDING,
                        source_usage_credit_id=credit.usage_credit.id,
                        metadata=metadata,
                    )
                )

        inserted = await insert_ledger_entries(self.session, self.ledger_transaction.id, entries)
        for index, application in enumerate(applications):
            application.entries = inserted[index * 2 : index * 2 + 2]

        self._log_pass(applications, need, len(superseded))
        return applications

    async def finalize(self) -> list[LedgerEntry]:
        """Post every pending, non-discarded entry of the transaction."""
        posted = await post_pending_entries(self.session, self.ledger_transaction.id)
        logger.info(
            "Credit application finalized",
            ledger_transaction_id=self.ledger_transaction.id,
            ledger_account_id=self.ledger_account.id,
            posted_entries=len(posted),
            passes=self.passes,
        )
        return posted

    def _log_pass(
        self, applications: list[CreditApplication], uncovered: int, superseded: int
    ) -> None:
        logger.info(
            "Credit application pass",
            ledger_transaction_id=self.ledger_transaction.id,
            ledger_account_id=self.ledger_account.id,
            applied=sum(a.amount for a in applications),
            credits_used=len(applications),
            uncovered=max(uncovered, 0),
            superseded_entries=superseded,
        )


async def apply_credits_to_outstanding_usage(
    session: AsyncSession,
    ledger_transaction: LedgerTransaction,
    ledger_account: LedgerAccount,
    usage_event_id: str | None = None,
) -> list[CreditApplication]:
    """One apply-then-post pass, the common case for ledger commands."""
    run = CreditApplicationRun(session, ledger_transaction, ledger_account)
    applications = await run.apply(usage_event_id=usage_event_id)
    await run.finalize()
    return applications


__all__ = [
    "APPLICATION_ENTRY_TYPES",
    "CREDIT_ORDERINGS",
    "CreditApplication",
    "CreditApplicationRun",
    "EligibleCredit",
    "apply_credits_to_outstanding_usage",
    "expiring_first",
    "oldest_first",
    "select_eligible_credits",
]
