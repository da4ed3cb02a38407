"""
Billing module.

Provides:
- Usage ledger with posted and available balances
- Credit grants and their application to metered usage
- Subscription lifecycle helpers and free-to-paid upgrades
- Setup intent reconciliation for checkout sessions
- Hashed billing events
"""

from __future__ import annotations

from flowledger.platform.billing.exceptions import (
    BillingError,
    ConflictError,
    CreditTrialPaymentMethodError,
    DuplicatePaidSubscriptionError,
    GuardError,
    LedgerInvariantError,
    NotFoundError,
    PaymentGatewayError,
    SubscriptionChainError,
    SubscriptionLinkConflictError,
    ValidationError,
)

__all__ = [
    "BillingError",
    "ConflictError",
    "CreditTrialPaymentMethodError",
    "DuplicatePaidSubscriptionError",
    "GuardError",
    "LedgerInvariantError",
    "NotFoundError",
    "PaymentGatewayError",
    "SubscriptionChainError",
    "SubscriptionLinkConflictError",
    "ValidationError",
]
