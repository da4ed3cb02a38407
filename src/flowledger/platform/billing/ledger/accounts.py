"""Ledger account provisioning and lookup."""

from collections.abc import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.core.entities import Subscription
from flowledger.platform.billing.core.repository import Repository
from flowledger.platform.billing.exceptions import NotFoundError
from flowledger.platform.billing.ledger.entities import LedgerAccount

logger = structlog.get_logger(__name__)


async def find_ledger_account(
    session: AsyncSession, subscription_id: str, usage_meter_id: str
) -> LedgerAccount | None:
    return await Repository(session, LedgerAccount).select_one_where(
        LedgerAccount.subscription_id == subscription_id,
        LedgerAccount.usage_meter_id == usage_meter_id,
    )


async def select_ledger_account(
    session: AsyncSession, subscription_id: str, usage_meter_id: str
) -> LedgerAccount:
    account = await find_ledger_account(session, subscription_id, usage_meter_id)
    if account is None:
        raise NotFoundError(
            "LedgerAccount", subscription_id=subscription_id, usage_meter_id=usage_meter_id
        )
    return account


async def ensure_ledger_accounts_for_subscription(
    session: AsyncSession,
    subscription: Subscription,
    usage_meter_ids: Iterable[str],
) -> list[LedgerAccount]:
    """One account per (subscription, meter); existing accounts are reused."""
    accounts: list[LedgerAccount] = []
    for usage_meter_id in dict.fromkeys(usage_meter_ids):
        account = await find_ledger_account(session, subscription.id, usage_meter_id)
        if account is None:
            account = await Repository(session, LedgerAccount).insert(
                organization_id=subscription.organization_id,
                livemode=subscription.livemode,
                subscription_id=subscription.id,
                usage_meter_id=usage_meter_id,
            )
            logger.info(
                "Ledger account created",
                ledger_account_id=account.id,
                subscription_id=subscription.id,
                usage_meter_id=usage_meter_id,
            )
        accounts.append(account)
    return accounts


__all__ = ["find_ledger_account", "select_ledger_account", "ensure_ledger_accounts_for_subscription"]
