"""
Billing enums shared by the ledger, subscription and checkout modules.
"""

from enum import Enum


class PriceType(str, Enum):
    SINGLE_PAYMENT = "single_payment"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"


class IntervalUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    CREDIT_TRIAL = "credit_trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    CANCELED = "canceled"
    PAUSED = "paused"


class SubscriptionCancellationReason(str, Enum):
    UPGRADED_TO_PAID = "upgraded_to_paid"
    CUSTOMER_REQUEST = "customer_request"
    NON_PAYMENT = "non_payment"
    OTHER = "other"


class PurchaseStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    FAILED = "failed"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"
    FRAUDULENT = "fraudulent"


class CheckoutSessionType(str, Enum):
    PRODUCT = "product"
    PURCHASE = "purchase"
    INVOICE = "invoice"
    ADD_PAYMENT_METHOD = "add_payment_method"
    ACTIVATE_SUBSCRIPTION = "activate_subscription"


class CheckoutSessionStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckoutSessionStatus.SUCCEEDED, CheckoutSessionStatus.FAILED)


class PaymentMethodType(str, Enum):
    CARD = "card"
    US_BANK_ACCOUNT = "us_bank_account"
    SEPA_DEBIT = "sepa_debit"
    LINK = "link"
    OTHER = "other"


class DiscountAmountType(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


class BillingPeriodStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class BillingRunStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class EventNoun(str, Enum):
    CUSTOMER = "customer"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class FlowEventType(str, Enum):
    CUSTOMER_CREATED = "customer.created"
    PURCHASE_COMPLETED = "purchase.completed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"


# ============================================================================
# Ledger
# ============================================================================


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"


class LedgerEntryDirection(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class LedgerEntryType(str, Enum):
    USAGE_COST = "usage_cost"
    CREDIT_GRANT_RECOGNIZED = "credit_grant_recognized"
    CREDIT_APPLIED_TO_USAGE = "credit_applied_to_usage"
    USAGE_CREDIT_APPLICATION_DEBIT_FROM_CREDIT_BALANCE = (
        "usage_credit_application_debit_from_credit_balance"
    )
    CREDIT_GRANT_EXPIRED = "credit_grant_expired"
    CREDIT_BALANCE_ADJUSTED = "credit_balance_adjusted"
    BILLING_ADJUSTMENT = "billing_adjustment"


class LedgerEntrySource(str, Enum):
    """Which source reference column an entry type must carry."""

    USAGE_EVENT = "usage_event"
    USAGE_CREDIT = "usage_credit"
    BILLING_PERIOD_CALCULATION = "billing_period_calculation"


class LedgerTransactionType(str, Enum):
    USAGE_EVENT_PROCESSED = "usage_event_processed"
    CREDIT_GRANT_RECOGNIZED = "credit_grant_recognized"
    BILLING_RUN_CREDIT_APPLIED = "billing_run_credit_applied"
    CREDIT_GRANT_EXPIRED = "credit_grant_expired"
    ADMIN_CREDIT_ADJUSTED = "admin_credit_adjusted"
    BILLING_RECALCULATED = "billing_recalculated"


class UsageCreditType(str, Enum):
    GRANT = "grant"
    PAYMENT = "payment"
    PROMOTIONAL = "promotional"


class UsageCreditStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"


class BalanceMode(str, Enum):
    """Consistency mode for balance aggregation."""

    POSTED = "posted"
    AVAILABLE = "available"
    CONSERVATIVE = "conservative"
