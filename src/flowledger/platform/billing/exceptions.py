"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Provides error handling with status codes, context, and recovery hints.

Expected domain failures (``NotFoundError``, ``ValidationError``,
``ConflictError``, ``GuardError``) are returned to callers as ``Err`` results
by the workflow entry points. ``LedgerInvariantError`` marks a programming
error and is always raised.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class NotFoundError(BillingError):
    """A referenced record does not exist."""

    def __init__(self, resource: str, resource_id: str | None = None, **context: Any) -> None:
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        ctx: dict[str, Any] = {"resource": resource, **context}
        if resource_id is not None:
            ctx["resource_id"] = resource_id
        super().__init__(
            message,
            "NOT_FOUND",
            status_code=404,
            context=ctx,
            recovery_hint="Verify the identifier and that the record belongs to this organization",
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(BillingError):
    """Input is malformed or not valid for the requested operation."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint,
        )


class ConflictError(BillingError):
    """The operation conflicts with existing state."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "CONFLICT",
            status_code=409,
            context=context,
            recovery_hint=recovery_hint,
        )


class DuplicatePaidSubscriptionError(ConflictError):
    """Customer already has an active paid subscription."""

    def __init__(self, customer_id: str, subscription_ids: list[str]) -> None:
        super().__init__(
            f"Customer {customer_id} already has an active paid subscription",
            context={"customer_id": customer_id, "subscription_ids": subscription_ids},
            recovery_hint=(
                "Cancel the existing subscription or enable multiple subscriptions "
                "per customer for the organization"
            ),
        )
        self.error_code = "DUPLICATE_PAID_SUBSCRIPTION"


class SubscriptionLinkConflictError(ConflictError):
    """Subscription already replaced by a different subscription."""

    def __init__(self, subscription_id: str, existing_target: str, requested_target: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} is already replaced by {existing_target}",
            context={
                "subscription_id": subscription_id,
                "replaced_by_subscription_id": existing_target,
                "requested_replaced_by_subscription_id": requested_target,
            },
        )
        self.error_code = "SUBSCRIPTION_LINK_CONFLICT"


class GuardError(BillingError):
    """A business rule forbids the operation in the current state."""

    def __init__(
        self,
        message: str,
        error_code: str = "GUARD_REJECTED",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            error_code,
            status_code=409,
            context=context,
            recovery_hint=recovery_hint,
        )


class CreditTrialPaymentMethodError(GuardError):
    """Credit trial subscriptions cannot take a default payment method."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} is a credit trial subscription",
            error_code="CREDIT_TRIAL_PAYMENT_METHOD",
            context={"subscription_id": subscription_id},
            recovery_hint="Upgrade the subscription to a paid plan before adding a payment method",
        )


class LedgerInvariantError(BillingError):
    """Ledger or subscription state violates an invariant. Never returned as a result."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "LEDGER_INVARIANT", status_code=500, context=context)


class SubscriptionChainError(LedgerInvariantError):
    """The replaced_by chain of a subscription loops or is too long."""

    def __init__(self, subscription_id: str, visited: list[str]) -> None:
        super().__init__(
            f"Subscription chain starting at {subscription_id} does not terminate",
            context={"subscription_id": subscription_id, "visited": visited},
        )
        self.error_code = "SUBSCRIPTION_CHAIN"


class PaymentGatewayError(BillingError):
    """Payment provider call failed."""

    def __init__(self, message: str, provider: str = "stripe", **context: Any) -> None:
        super().__init__(
            message,
            "PAYMENT_GATEWAY_ERROR",
            status_code=502,
            context={"provider": provider, **context},
            recovery_hint="Retry later; the provider will redeliver the webhook",
        )


__all__ = [
    "BillingError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "DuplicatePaidSubscriptionError",
    "SubscriptionLinkConflictError",
    "GuardError",
    "CreditTrialPaymentMethodError",
    "LedgerInvariantError",
    "SubscriptionChainError",
    "PaymentGatewayError",
]
