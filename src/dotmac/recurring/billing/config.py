"""
Billing module configuration
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PaymentRetryConfig(BaseModel):
    """Dunning configuration"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, ge=1, description="Charge attempts per invoice")
    retry_schedule_days: tuple[int, ...] = Field(
        (1, 3, 7, 14, 30),
        description="Days to wait after the Nth failed attempt",
    )

    @model_validator(mode="after")
    def validate_schedule(self) -> "PaymentRetryConfig":
        if not self.retry_schedule_days or any(day <= 0 for day in self.retry_schedule_days):
            raise ValueError("retry_schedule_days must contain positive day counts")
        return self


class ChargeConfig(BaseModel):
    """Charge execution configuration"""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(30.0, gt=0, description="Charge call timeout")
    max_concurrency: int = Field(10, ge=1, description="Concurrent charges per sweep")
    stale_processing_minutes: int = Field(
        30, ge=1, description="Age after which a PROCESSING invoice is recovered"
    )


class ProrationConfig(BaseModel):
    """Proration sanity limits"""

    model_config = ConfigDict(frozen=True)

    max_net_amount: Decimal = Field(Decimal("10000"), gt=0, description="Largest net accepted")
    max_period_days: int = Field(400, ge=1, description="Longest period accepted")


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict(frozen=True)

    default_currency: str = Field("USD", description="Default currency code")
    grace_period_days: int = Field(3, ge=0, description="Invoice due date offset in days")
    payment_retry: PaymentRetryConfig = Field(default_factory=PaymentRetryConfig)
    charge: ChargeConfig = Field(default_factory=ChargeConfig)
    proration: ProrationConfig = Field(default_factory=ProrationConfig)

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Create configuration from the environment-backed settings"""
        from dotmac.recurring.settings import settings

        billing = settings.billing
        return cls(
            default_currency=billing.default_currency,
            grace_period_days=billing.grace_period_days,
            payment_retry=PaymentRetryConfig(
                max_attempts=billing.max_payment_attempts,
                retry_schedule_days=tuple(billing.retry_schedule_days),
            ),
            charge=ChargeConfig(
                timeout_seconds=billing.charge_timeout_seconds,
                max_concurrency=billing.max_concurrency,
                stale_processing_minutes=billing.stale_processing_minutes,
            ),
            proration=ProrationConfig(
                max_net_amount=billing.proration_max_net_amount,
                max_period_days=billing.proration_max_period_days,
            ),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
