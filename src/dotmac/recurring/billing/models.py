"""
Billing domain models.

Plans, subscriptions and invoices are pydantic models handed to and from the
repositories; ``ProrationResult`` is a computed value that is never persisted.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dotmac.recurring.billing.enums import (
    IntervalUnit,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
)
from dotmac.recurring.billing.money import ZERO, validate_currency


def utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class AppBaseModel(BaseModel):
    """Base model for all billing entities."""

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        str_strip_whitespace=True,
    )


class Plan(AppBaseModel):
    """A price and billing interval that subscriptions are charged against."""

    plan_id: str = Field(default_factory=_new_id, description="Plan identifier")
    code: str = Field(min_length=1, max_length=50, description="Unique plan code")
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    amount: Decimal = Field(ge=0, description="Price per interval")
    currency: str = Field("USD", min_length=3, max_length=3)
    interval_unit: IntervalUnit = IntervalUnit.MONTH
    interval_count: int = Field(1, ge=1)
    trial_days: int | None = Field(None, ge=0)
    setup_fee: Decimal | None = Field(None, ge=0)
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)

    @model_validator(mode="after")
    def validate_interval(self) -> "Plan":
        if self.interval_count > self.interval_unit.max_count:
            raise ValueError(
                f"interval_count for {self.interval_unit.value} cannot exceed "
                f"{self.interval_unit.max_count}"
            )
        return self

    @property
    def has_trial(self) -> bool:
        return bool(self.trial_days and self.trial_days > 0)

    @property
    def has_setup_fee(self) -> bool:
        return bool(self.setup_fee and self.setup_fee > 0)


class PendingCancellation(AppBaseModel):
    """Cancellation scheduled for a future instant (normally period end)."""

    kind: Literal["CANCELLATION"] = "CANCELLATION"
    effective_at: datetime
    reason: str | None = None
    requested_at: datetime = Field(default_factory=utcnow)


class PendingPlanChange(AppBaseModel):
    """Plan swap scheduled for a future instant."""

    kind: Literal["PLAN_CHANGE"] = "PLAN_CHANGE"
    effective_at: datetime
    new_plan_id: str
    requested_at: datetime = Field(default_factory=utcnow)


PendingChange = Annotated[PendingCancellation | PendingPlanChange, Field(discriminator="kind")]


class Subscription(AppBaseModel):
    """A customer's subscription to a plan."""

    subscription_id: str = Field(default_factory=_new_id)
    customer_id: str = Field(min_length=1)
    plan_id: str
    payment_method_ref: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.PENDING

    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    next_billing_date: datetime | None = None
    billing_cycle_anchor: datetime | None = None
    period_plan_id: str | None = Field(
        None, description="Plan the current period was opened under; prices its invoice"
    )

    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    pending_change: PendingChange | None = None

    credit_balance: Decimal = Field(ZERO, ge=0, description="Unapplied customer credit")
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def in_trial_period(self) -> bool:
        """True while the current period is the free trial."""
        return (
            self.trial_end is not None
            and self.current_period_end is not None
            and self.current_period_end <= self.trial_end
        )

    def pending_cancellation(self) -> PendingCancellation | None:
        if isinstance(self.pending_change, PendingCancellation):
            return self.pending_change
        return None

    def pending_plan_change(self) -> PendingPlanChange | None:
        if isinstance(self.pending_change, PendingPlanChange):
            return self.pending_change
        return None

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()


class Invoice(AppBaseModel):
    """A bill for one subscription period, proration, or setup fee."""

    invoice_id: str = Field(default_factory=_new_id)
    invoice_number: str = Field(default_factory=lambda: generate_invoice_number(utcnow()))
    subscription_id: str
    customer_id: str
    kind: InvoiceKind = InvoiceKind.SUBSCRIPTION
    amount: Decimal = Field(ge=0)
    credit_applied: Decimal = Field(ZERO, ge=0)
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.PENDING
    description: str | None = None

    period_start: datetime
    period_end: datetime
    due_date: datetime

    attempt_count: int = Field(0, ge=0)
    charge_sequence: int = Field(0, ge=0)
    next_payment_attempt: datetime | None = None
    last_attempt_at: datetime | None = None
    failure_code: str | None = None
    charge_ref: str | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def idempotency_key(self) -> str:
        """Stable per invoice until a definitive decline advances the sequence."""
        return f"inv_{self.invoice_id}_{self.charge_sequence}"

    def covers(self, period_start: datetime, period_end: datetime) -> bool:
        return self.period_start == period_start and self.period_end == period_end

    def retries_exhausted(self, max_attempts: int) -> bool:
        """No further charge will be attempted for this invoice."""
        if self.status != InvoiceStatus.FAILED:
            return False
        return self.attempt_count >= max_attempts or self.next_payment_attempt is None

    def mark_processing(self, now: datetime) -> None:
        self.status = InvoiceStatus.PROCESSING
        self.attempt_count += 1
        self.last_attempt_at = now
        self.updated_at = now

    def mark_paid(self, charge_ref: str | None, now: datetime) -> None:
        self.status = InvoiceStatus.PAID
        self.charge_ref = charge_ref
        self.paid_at = now
        self.next_payment_attempt = None
        self.failure_code = None
        self.updated_at = now

    def mark_failed(
        self,
        failure_code: str | None,
        next_attempt: datetime | None,
        now: datetime,
        *,
        definitive: bool,
    ) -> None:
        self.status = InvoiceStatus.FAILED
        self.failure_code = failure_code
        self.next_payment_attempt = next_attempt
        if definitive:
            self.charge_sequence += 1
        self.updated_at = now

    def mark_cancelled(self, now: datetime) -> None:
        self.status = InvoiceStatus.CANCELLED
        self.next_payment_attempt = None
        self.cancelled_at = now
        self.updated_at = now


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{uuid4().hex[:12].upper()}"


def invoice_due_date(now: datetime, grace_period_days: int) -> datetime:
    return now + timedelta(days=grace_period_days)


class ProrationResult(AppBaseModel):
    """Outcome of a proration calculation."""

    applies: bool
    reason: str | None = None
    currency: str = "USD"
    original_amount: Decimal = ZERO
    new_amount: Decimal = ZERO
    days_used: int = 0
    days_remaining: int = 0
    total_days: int = 0
    unused_amount: Decimal = ZERO
    prorated_amount: Decimal = ZERO
    net_amount: Decimal = ZERO
    explanation: str = ""
    period_start: datetime | None = None
    period_end: datetime | None = None
    effective_at: datetime | None = None

    @classmethod
    def not_applicable(cls, reason: str, currency: str = "USD") -> "ProrationResult":
        return cls(applies=False, reason=reason, currency=currency, explanation=reason)

    @property
    def is_charge(self) -> bool:
        return self.applies and self.net_amount > 0

    @property
    def is_credit(self) -> bool:
        return self.applies and self.net_amount < 0


__all__ = [
    "AppBaseModel",
    "Invoice",
    "PendingCancellation",
    "PendingChange",
    "PendingPlanChange",
    "Plan",
    "ProrationResult",
    "Subscription",
    "generate_invoice_number",
    "invoice_due_date",
    "utcnow",
]
