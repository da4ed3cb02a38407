"""
Billing module configuration
"""

from pydantic import BaseModel, ConfigDict, Field

from flowledger.platform.settings import CreditOrdering


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict()

    api_key: str = Field(..., description="Stripe API key")
    webhook_secret: str | None = Field(None, description="Stripe webhook secret")
    api_version: str | None = Field(None, description="Pinned Stripe API version")


class LedgerConfig(BaseModel):
    """Usage ledger configuration"""

    model_config = ConfigDict()

    credit_ordering: CreditOrdering = Field(
        CreditOrdering.OLDEST_FIRST, description="Order in which usage credits are consumed"
    )
    max_subscription_chain_hops: int = Field(
        10, ge=1, description="Max replaced_by links followed when resolving a subscription"
    )


class FeeConfig(BaseModel):
    """Checkout fee configuration"""

    model_config = ConfigDict()

    platform_fee_percentage: float = Field(
        0.65, ge=0, le=100, description="Fallback fee percentage when the organization has none"
    )


class EventConfig(BaseModel):
    """Event log configuration"""

    model_config = ConfigDict()

    hash_algorithm: str = Field("sha256", description="hashlib algorithm used for event hashes")


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    stripe: StripeConfig | None = None
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    events: EventConfig = Field(default_factory=EventConfig)

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Create configuration from settings"""
        from flowledger.platform.settings import get_settings

        billing = get_settings().billing

        stripe_config = None
        if billing.stripe_api_key:
            stripe_config = StripeConfig(
                api_key=billing.stripe_api_key,
                webhook_secret=billing.stripe_webhook_secret or None,
                api_version=billing.stripe_api_version,
            )

        return cls(
            stripe=stripe_config,
            ledger=LedgerConfig(
                credit_ordering=billing.credit_ordering,
                max_subscription_chain_hops=billing.max_subscription_chain_hops,
            ),
            fees=FeeConfig(platform_fee_percentage=billing.platform_fee_percentage),
            events=EventConfig(hash_algorithm=billing.event_hash_algorithm),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_env()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set (or with None, reset) the global billing configuration instance"""
    global _billing_config
    _billing_config = config
