"""
Ledger commands.

Every business operation that touches the usage ledger is expressed as a
command. ``LedgerManager`` opens one ledger transaction per command, keyed
by the command's initiating source so a replayed command returns the
transaction it already produced instead of writing new entries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import BillingRun
from flowledger.platform.billing.core.enums import (
    LedgerEntryStatus,
    LedgerEntryType,
    LedgerTransactionType,
)
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import ValidationError
from flowledger.platform.billing.ledger.accounts import select_ledger_account
from flowledger.platform.billing.ledger.balances import (
    aggregate_available_balance_for_usage_credits,
)
from flowledger.platform.billing.ledger.credit_application import (
    CreditApplication,
    apply_credits_to_outstanding_usage,
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
    LedgerTransactionInsert,
    find_ledger_transaction_for_source,
    insert_ledger_entries,
    insert_ledger_transaction,
    select_entries_for_transaction,
)
from flowledger.platform.billing.result import returns_result

logger = structlog.get_logger(__name__)


# ============================================================================
# Commands
# ============================================================================


class _LedgerCommandBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    livemode: bool
    subscription_id: str
    description: str | None = None


class UsageEventProcessedCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.USAGE_EVENT_PROCESSED] = (
        LedgerTransactionType.USAGE_EVENT_PROCESSED
    )
    usage_event_id: str

    @property
    def initiating_source(self) -> tuple[str, str]:
        return ("usage_event", self.usage_event_id)


class CreditGrantRecognizedCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.CREDIT_GRANT_RECOGNIZED] = (
        LedgerTransactionType.CREDIT_GRANT_RECOGNIZED
    )
    usage_credit_id: str
    apply_to_outstanding_usage: bool = False

    @property
    def initiating_source(self) -> tuple[str, str]:
        return ("usage_credit", self.usage_credit_id)


class BillingRunCreditAppliedCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.BILLING_RUN_CREDIT_APPLIED] = (
        LedgerTransactionType.BILLING_RUN_CREDIT_APPLIED
    )
    billing_run_id: str
    usage_meter_id: str

    @property
    def initiating_source(self) -> tuple[str, str]:
        return ("billing_run", f"{self.billing_run_id}:{self.usage_meter_id}")


class CreditGrantExpiredCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.CREDIT_GRANT_EXPIRED] = (
        LedgerTransactionType.CREDIT_GRANT_EXPIRED
    )
    usage_meter_id: str
    as_of: datetime
    billing_period_id: str | None = None

    @property
    def initiating_source(self) -> tuple[str, str]:
        if self.billing_period_id:
            return ("billing_period", f"{self.billing_period_id}:{self.usage_meter_id}")
        return ("credit_expiry", f"{self.usage_meter_id}:{self.as_of.isoformat()}")


class AdminCreditAdjustedCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.ADMIN_CREDIT_ADJUSTED] = (
        LedgerTransactionType.ADMIN_CREDIT_ADJUSTED
    )
    usage_credit_id: str
    adjustment_id: str
    amount: int
    reason: str | None = None

    @property
    def initiating_source(self) -> tuple[str, str]:
        return ("credit_adjustment", self.adjustment_id)


class BillingRecalculatedCommand(_LedgerCommandBase):
    type: Literal[LedgerTransactionType.BILLING_RECALCULATED] = (
        LedgerTransactionType.BILLING_RECALCULATED
    )
    usage_meter_id: str
    billing_period_calculation_id: str
    amount: int

    @property
    def initiating_source(self) -> tuple[str, str]:
        return (
            "billing_period_calculation",
            f"{self.billing_period_calculation_id}:{self.usage_meter_id}",
        )


LedgerCommand = Annotated[
    Union[
        UsageEventProcessedCommand,
        CreditGrantRecognizedCommand,
        BillingRunCreditAppliedCommand,
        CreditGrantExpiredCommand,
        AdminCreditAdjustedCommand,
        BillingRecalculatedCommand,
    ],
    Field(discriminator="type"),
]

ledger_command_adapter: TypeAdapter[LedgerCommand] = TypeAdapter(LedgerCommand)


@dataclass
class LedgerCommandResult:
    ledger_transaction: LedgerTransaction
    ledger_entries: list[LedgerEntry]
    replayed: bool = False
    credit_applications: list[CreditApplication] = field(default_factory=list)


# ============================================================================
# Manager
# ============================================================================


class LedgerManager:
    """Executes ledger commands against one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def execute(self, command: LedgerCommand) -> LedgerCommandResult:
        """Run one command in a savepoint; a failed command leaves no transaction behind."""
        async with self.session.begin_nested():
            return await self._execute(command)

    async def _execute(self, command: LedgerCommand) -> LedgerCommandResult:
        source_type, source_id = command.initiating_source
        existing = await find_ledger_transaction_for_source(
            self.session,
            organization_id=command.organization_id,
            livemode=command.livemode,
            type=command.type,
            initiating_source_type=source_type,
            initiating_source_id=source_id,
        )
        if existing is not None:
            logger.info(
                "Ledger command already processed",
                ledger_transaction_id=existing.id,
                type=command.type.value,
                initiating_source_id=source_id,
            )
            entries = await select_entries_for_transaction(self.session, existing.id)
            return LedgerCommandResult(existing, entries, replayed=True)

        transaction = await insert_ledger_transaction(
            self.session,
            LedgerTransactionInsert(
                organization_id=command.organization_id,
                livemode=command.livemode,
                subscription_id=command.subscription_id,
                type=command.type,
                initiating_source_type=source_type,
                initiating_source_id=source_id,
                description=command.description,
            ),
        )

        applications: list[CreditApplication] = []
        if isinstance(command, UsageEventProcessedCommand):
            applications = await self._usage_event_processed(transaction, command)
        elif isinstance(command, CreditGrantRecognizedCommand):
            applications = await self._credit_grant_recognized(transaction, command)
        elif isinstance(command, BillingRunCreditAppliedCommand):
            applications = await self._billing_run_credit_applied(transaction, command)
        elif isinstance(command, CreditGrantExpiredCommand):
            await self._credit_grant_expired(transaction, command)
        elif isinstance(command, AdminCreditAdjustedCommand):
            await self._admin_credit_adjusted(transaction, command)
        elif isinstance(command, BillingRecalculatedCommand):
            await self._billing_recalculated(transaction, command)
        else:
            raise ValidationError(f"Unsupported ledger command: {command!r}")

        entries = await select_entries_for_transaction(self.session, transaction.id)
        return LedgerCommandResult(transaction, entries, credit_applications=applications)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _check_subscription(self, command: _LedgerCommandBase, subscription_id: str) -> None:
        if subscription_id != command.subscription_id:
            raise ValidationError(
                "Ledger command references a record of another subscription",
                context={
                    "command_subscription_id": command.subscription_id,
                    "record_subscription_id": subscription_id,
                },
            )

    async def _account_for_credit(
        self, command: _LedgerCommandBase, usage_credit_id: str
    ) -> tuple[UsageCredit, LedgerAccount]:
        usage_credit = await Repository(self.session, UsageCredit).select_by_id(usage_credit_id)
        self._check_subscription(command, usage_credit.subscription_id)
        account = await select_ledger_account(
            self.session, usage_credit.subscription_id, usage_credit.usage_meter_id
        )
        return usage_credit, account

    async def _usage_event_processed(
        self, transaction: LedgerTransaction, command: UsageEventProcessedCommand
    ) -> list[CreditApplication]:
        usage_event = await Repository(self.session, UsageEvent).select_by_id(
            command.usage_event_id
        )
        self._check_subscription(command, usage_event.subscription_id)
        account = await select_ledger_account(
            self.session, usage_event.subscription_id, usage_event.usage_meter_id
        )
        await insert_ledger_entries(
            self.session,
            transaction.id,
            [
                LedgerEntryInsert(
                    ledger_account_id=account.id,
                    entry_type=LedgerEntryType.USAGE_COST,
                    amount=usage_event.amount,
                    status=LedgerEntryStatus.POSTED,
                    source_usage_event_id=usage_event.id,
                    billing_period_id=usage_event.billing_period_id,
                )
            ],
        )
        return await apply_credits_to_outstanding_usage(
            self.session, transaction, account, usage_event_id=usage_event.id
        )

    async def _credit_grant_recognized(
        self, transaction: LedgerTransaction, command: CreditGrantRecognizedCommand
    ) -> list[CreditApplication]:
        usage_credit, account = await self._account_for_credit(command, command.usage_credit_id)
        await insert_ledger_entries(
            self.session,
            transaction.id,
            [
                LedgerEntryInsert(
                    ledger_account_id=account.id,
                    entry_type=LedgerEntryType.CREDIT_GRANT_RECOGNIZED,
                    amount=usage_credit.issued_amount,
                    status=LedgerEntryStatus.POSTED,
                    source_usage_credit_id=usage_credit.id,
                    billing_period_id=usage_credit.billing_period_id,
                )
            ],
        )
        if not command.apply_to_outstanding_usage:
            return []
        return await apply_credits_to_outstanding_usage(self.session, transaction, account)

    async def _billing_run_credit_applied(
        self, transaction: LedgerTransaction, command: BillingRunCreditAppliedCommand
    ) -> list[CreditApplication]:
        billing_run = await Repository(self.session, BillingRun).select_by_id(
            command.billing_run_id
        )
        self._check_subscription(command, billing_run.subscription_id)
        account = await select_ledger_account(
            self.session, billing_run.subscription_id, command.usage_meter_id
        )
        return await apply_credits_to_outstanding_usage(self.session, transaction, account)

    async def _credit_grant_expired(
        self, transaction: LedgerTransaction, command: CreditGrantExpiredCommand
    ) -> None:
        account = await select_ledger_account(
            self.session, command.subscription_id, command.usage_meter_id
        )
        expiring = await Repository(self.session, UsageCredit).select_where(
            UsageCredit.subscription_id == account.subscription_id,
            UsageCredit.usage_meter_id == account.usage_meter_id,
            UsageCredit.expires_at.is_not(None),
            UsageCredit.expires_at <= command.as_of,
        )
        if not expiring:
            return
        balances = await aggregate_available_balance_for_usage_credits(
            self.session, account.id, [credit.id for credit in expiring]
        )
        entries = [
            LedgerEntryInsert(
                ledger_account_id=account.id,
                entry_type=LedgerEntryType.CREDIT_GRANT_EXPIRED,
                amount=balance.balance,
                status=LedgerEntryStatus.POSTED,
                source_usage_credit_id=balance.usage_credit_id,
                billing_period_id=command.billing_period_id,
            )
            for balance in balances
            if balance.balance > 0
        ]
        await insert_ledger_entries(self.session, transaction.id, entries)
        logger.info(
            "Usage credits expired",
            ledger_account_id=account.id,
            expired_credits=len(entries),
            expired_amount=sum(entry.amount for entry in entries),
        )

    async def _admin_credit_adjusted(
        self, transaction: LedgerTransaction, command: AdminCreditAdjustedCommand
    ) -> None:
        usage_credit, account = await self._account_for_credit(command, command.usage_credit_id)
        balances = await aggregate_available_balance_for_usage_credits(
            self.session, account.id, [usage_credit.id]
        )
        remaining = balances[0].balance if balances else 0
        if command.amount > remaining:
            raise ValidationError(
                "Adjustment exceeds the usage credit's remaining balance",
                context={
                    "usage_credit_id": usage_credit.id,
                    "remaining": remaining,
                    "amount": command.amount,
                },
            )
        await insert_ledger_entries(
            self.session,
            transaction.id,
            [
                LedgerEntryInsert(
                    ledger_account_id=account.id,
                    entry_type=LedgerEntryType.CREDIT_BALANCE_ADJUSTED,
                    amount=command.amount,
                    status=LedgerEntryStatus.POSTED,
                    source_usage_credit_id=usage_credit.id,
                    description=command.reason,
                )
            ],
        )

    async def _billing_recalculated(
        self, transaction: LedgerTransaction, command: BillingRecalculatedCommand
    ) -> None:
        account = await select_ledger_account(
            self.session, command.subscription_id, command.usage_meter_id
        )
        await insert_ledger_entries(
            self.session,
            transaction.id,
            [
                LedgerEntryInsert(
                    ledger_account_id=account.id,
                    entry_type=LedgerEntryType.BILLING_ADJUSTMENT,
                    amount=command.amount,
                    status=LedgerEntryStatus.POSTED,
                    source_billing_period_calculation_id=command.billing_period_calculation_id,
                )
            ],
        )


@returns_result
async def process_ledger_command(
    session: AsyncSession, command: LedgerCommand
) -> LedgerCommandResult:
    """Run a ledger command, returning domain failures as ``Err``."""
    return await LedgerManager(session).execute(command)


__all__ = [
    "AdminCreditAdjustedCommand",
    "BillingRecalculatedCommand",
    "BillingRunCreditAppliedCommand",
    "CreditGrantExpiredCommand",
    "CreditGrantRecognizedCommand",
    "LedgerCommand",
    "LedgerCommandResult",
    "LedgerManager",
    "UsageEventProcessedCommand",
    "ledger_command_adapter",
    "process_ledger_command",
]
