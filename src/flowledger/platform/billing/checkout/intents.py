"""
Payment provider intents and checkout metadata.

Intents arrive from the provider (webhook payloads or API reads) and are
validated into pydantic models. Their ``metadata`` must identify the
checkout session that started them.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from flowledger.platform.billing.core.enums import CheckoutSessionStatus
from flowledger.platform.billing.exceptions import ValidationError


def _expandable_id(value: Any) -> Any:
    """Provider fields may be an id or an expanded object with an ``id``."""
    if isinstance(value, dict):
        return value.get("id")
    if value is not None and not isinstance(value, str) and hasattr(value, "id"):
        return value.id
    return value


class SetupIntent(BaseModel):
    """Subset of a provider setup intent used by reconciliation."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    status: str
    metadata: dict[str, Any] | None = None
    customer: str | None = None
    payment_method: str | None = None
    livemode: bool = False

    @field_validator("customer", "payment_method", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


class PaymentIntent(BaseModel):
    """Subset of a provider payment intent."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    status: str
    metadata: dict[str, Any] | None = None
    customer: str | None = None
    payment_method: str | None = None
    amount: int | None = None
    currency: str | None = None
    livemode: bool = False

    @field_validator("customer", "payment_method", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


# ============================================================================
# Metadata
# ============================================================================


class CheckoutSessionIntentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Literal["checkout_session"]
    checkout_session_id: str = Field(alias="checkoutSessionId", min_length=1)


class BillingRunIntentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Literal["billing_run"]
    billing_run_id: str = Field(alias="billingRunId", min_length=1)


IntentMetadata = Annotated[
    Union[CheckoutSessionIntentMetadata, BillingRunIntentMetadata],
    Field(discriminator="type"),
]

_intent_metadata_adapter: TypeAdapter[IntentMetadata] = TypeAdapter(IntentMetadata)


def parse_intent_metadata(metadata: dict[str, Any] | None) -> IntentMetadata:
    if not metadata:
        raise ValidationError("Intent has no metadata")
    try:
        return _intent_metadata_adapter.validate_python(metadata)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Intent metadata is malformed",
            context={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def parse_checkout_session_metadata(
    metadata: dict[str, Any] | None,
) -> CheckoutSessionIntentMetadata:
    """Metadata of an intent started by a checkout session."""
    parsed = parse_intent_metadata(metadata)
    if not isinstance(parsed, CheckoutSessionIntentMetadata):
        raise ValidationError(
            "Intent metadata does not reference a checkout session",
            context={"type": parsed.type},
        )
    return parsed


# ============================================================================
# Status mapping
# ============================================================================

_SETUP_INTENT_STATUS: dict[str, CheckoutSessionStatus] = {
    "succeeded": CheckoutSessionStatus.SUCCEEDED,
    "processing": CheckoutSessionStatus.PENDING,
    "canceled": CheckoutSessionStatus.FAILED,
    "requires_payment_method": CheckoutSessionStatus.PENDING,
}

_PAYMENT_INTENT_STATUS: dict[str, CheckoutSessionStatus] = {
    **_SETUP_INTENT_STATUS,
    "requires_capture": CheckoutSessionStatus.PENDING,
    "requires_action": CheckoutSessionStatus.PENDING,
    "requires_confirmation": CheckoutSessionStatus.PENDING,
}


def checkout_session_status_from_setup_intent(status: str) -> CheckoutSessionStatus:
    return _SETUP_INTENT_STATUS.get(status, CheckoutSessionStatus.PENDING)


def checkout_session_status_from_payment_intent(status: str) -> CheckoutSessionStatus:
    return _PAYMENT_INTENT_STATUS.get(status, CheckoutSessionStatus.PENDING)


__all__ = [
    "BillingRunIntentMetadata",
    "CheckoutSessionIntentMetadata",
    "IntentMetadata",
    "PaymentIntent",
    "SetupIntent",
    "checkout_session_status_from_payment_intent",
    "checkout_session_status_from_setup_intent",
    "parse_checkout_session_metadata",
    "parse_intent_metadata",
]
