"""
SQLAlchemy tables for plans, subscriptions, invoices and webhook deliveries.

Each table converts to and from its pydantic domain model; repositories never
hand ORM rows to callers.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import TypeAdapter
from sqlalchemy import JSON, Boolean, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.recurring.billing.enums import (
    IntervalUnit,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
)
from dotmac.recurring.billing.models import Invoice, PendingChange, Plan, Subscription
from dotmac.recurring.db import Base, TimestampMixin, UTCDateTime
from dotmac.recurring.webhooks.models import (
    DeliveryStatus,
    HttpMethod,
    WebhookDelivery,
    WebhookEventType,
)

_pending_change_adapter: TypeAdapter[PendingChange] = TypeAdapter(PendingChange)

# One live SUBSCRIPTION invoice per period; cancelled invoices do not count
_LIVE_PERIOD_INVOICE = "status != 'CANCELLED' AND kind = 'SUBSCRIPTION'"


class RecurringSQLModel(TimestampMixin, Base):
    """Base SQLAlchemy model for recurring billing tables."""

    __abstract__ = True


class PlanTable(RecurringSQLModel):
    """SQLAlchemy table for subscription plans."""

    __tablename__ = "recurring_plans"

    plan_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Pricing
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    setup_fee: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)

    # Interval
    interval_unit: Mapped[str] = mapped_column(String(10), nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (Index("ix_recurring_plans_active", "is_active"),)

    @classmethod
    def from_model(cls, plan: Plan) -> "PlanTable":
        return cls(
            plan_id=plan.plan_id,
            code=plan.code,
            name=plan.name,
            description=plan.description,
            amount=plan.amount,
            currency=plan.currency,
            setup_fee=plan.setup_fee,
            interval_unit=plan.interval_unit.value,
            interval_count=plan.interval_count,
            trial_days=plan.trial_days,
            is_active=plan.is_active,
            metadata_json=plan.metadata,
            created_at=plan.created_at,
            updated_at=plan.updated_at or plan.created_at,
        )

    def to_model(self) -> Plan:
        return Plan(
            plan_id=self.plan_id,
            code=self.code,
            name=self.name,
            description=self.description,
            amount=self.amount,
            currency=self.currency,
            setup_fee=self.setup_fee,
            interval_unit=IntervalUnit(self.interval_unit),
            interval_count=self.interval_count,
            trial_days=self.trial_days,
            is_active=self.is_active,
            metadata=self.metadata_json or {},
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SubscriptionTable(RecurringSQLModel):
    """SQLAlchemy table for customer subscriptions."""

    __tablename__ = "recurring_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_method_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_cycle_anchor: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    period_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduled change; kind and effective date are duplicated for querying
    pending_change: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pending_change_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pending_change_effective_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    credit_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_recurring_subscriptions_status_billing", "status", "next_billing_date"),
        Index("ix_recurring_subscriptions_customer", "customer_id"),
        Index("ix_recurring_subscriptions_plan_status", "plan_id", "status"),
        Index(
            "ix_recurring_subscriptions_pending",
            "pending_change_kind",
            "pending_change_effective_at",
        ),
    )

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionTable":
        pending = subscription.pending_change
        return cls(
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            plan_id=subscription.plan_id,
            payment_method_ref=subscription.payment_method_ref,
            status=subscription.status.value,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_start=subscription.trial_start,
            trial_end=subscription.trial_end,
            next_billing_date=subscription.next_billing_date,
            billing_cycle_anchor=subscription.billing_cycle_anchor,
            period_plan_id=subscription.period_plan_id,
            cancelled_at=subscription.cancelled_at,
            cancellation_reason=subscription.cancellation_reason,
            pending_change=pending.model_dump(mode="json") if pending else None,
            pending_change_kind=pending.kind if pending else None,
            pending_change_effective_at=pending.effective_at if pending else None,
            credit_balance=subscription.credit_balance,
            idempotency_key=subscription.idempotency_key,
            metadata_json=subscription.metadata,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at or subscription.created_at,
        )

    def to_model(self) -> Subscription:
        return Subscription(
            subscription_id=self.subscription_id,
            customer_id=self.customer_id,
            plan_id=self.plan_id,
            payment_method_ref=self.payment_method_ref,
            status=SubscriptionStatus(self.status),
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            trial_start=self.trial_start,
            trial_end=self.trial_end,
            next_billing_date=self.next_billing_date,
            billing_cycle_anchor=self.billing_cycle_anchor,
            period_plan_id=self.period_plan_id,
            cancelled_at=self.cancelled_at,
            cancellation_reason=self.cancellation_reason,
            pending_change=(
                _pending_change_adapter.validate_python(self.pending_change)
                if self.pending_change
                else None
            ),
            credit_balance=self.credit_balance,
            idempotency_key=self.idempotency_key,
            metadata=self.metadata_json or {},
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class InvoiceTable(RecurringSQLModel):
    """SQLAlchemy table for invoices."""

    __tablename__ = "recurring_invoices"

    invoice_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    credit_applied: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Payment attempts
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charge_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_payment_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    charge_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_recurring_invoices_live_period",
            "subscription_id",
            "period_start",
            "period_end",
            unique=True,
            sqlite_where=text(_LIVE_PERIOD_INVOICE),
            postgresql_where=text(_LIVE_PERIOD_INVOICE),
        ),
        Index("ix_recurring_invoices_retry", "status", "next_payment_attempt"),
        Index("ix_recurring_invoices_subscription", "subscription_id", "created_at"),
    )

    @classmethod
    def from_model(cls, invoice: Invoice) -> "InvoiceTable":
        return cls(
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer_id,
            kind=invoice.kind.value,
            amount=invoice.amount,
            credit_applied=invoice.credit_applied,
            currency=invoice.currency,
            status=invoice.status.value,
            description=invoice.description,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            due_date=invoice.due_date,
            attempt_count=invoice.attempt_count,
            charge_sequence=invoice.charge_sequence,
            next_payment_attempt=invoice.next_payment_attempt,
            last_attempt_at=invoice.last_attempt_at,
            failure_code=invoice.failure_code,
            charge_ref=invoice.charge_ref,
            paid_at=invoice.paid_at,
            cancelled_at=invoice.cancelled_at,
            created_at=invoice.created_at,
            updated_at=invoice.updated_at or invoice.created_at,
        )

    def to_model(self) -> Invoice:
        return Invoice(
            invoice_id=self.invoice_id,
            invoice_number=self.invoice_number,
            subscription_id=self.subscription_id,
            customer_id=self.customer_id,
            kind=InvoiceKind(self.kind),
            amount=self.amount,
            credit_applied=self.credit_applied,
            currency=self.currency,
            status=InvoiceStatus(self.status),
            description=self.description,
            period_start=self.period_start,
            period_end=self.period_end,
            due_date=self.due_date,
            attempt_count=self.attempt_count,
            charge_sequence=self.charge_sequence,
            next_payment_attempt=self.next_payment_attempt,
            last_attempt_at=self.last_attempt_at,
            failure_code=self.failure_code,
            charge_ref=self.charge_ref,
            paid_at=self.paid_at,
            cancelled_at=self.cancelled_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class WebhookDeliveryTable(RecurringSQLModel):
    """SQLAlchemy table for outbound webhook deliveries."""

    __tablename__ = "recurring_webhook_deliveries"

    delivery_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    endpoint_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    http_method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_recurring_webhooks_event", "event_id", "event_type", "endpoint_url"),
        Index("ix_recurring_webhooks_retry", "status", "next_attempt_at"),
        Index("ix_recurring_webhooks_cleanup", "status", "updated_at"),
    )

    @classmethod
    def from_model(cls, delivery: WebhookDelivery) -> "WebhookDeliveryTable":
        return cls(
            delivery_id=delivery.delivery_id,
            endpoint_url=delivery.endpoint_url,
            http_method=delivery.http_method.value,
            event_type=delivery.event_type.value,
            event_id=delivery.event_id,
            payload=delivery.payload,
            headers=delivery.headers,
            correlation_id=delivery.correlation_id,
            status=delivery.status.value,
            attempt_count=delivery.attempt_count,
            max_attempts=delivery.max_attempts,
            scheduled_at=delivery.scheduled_at,
            next_attempt_at=delivery.next_attempt_at,
            last_attempt_at=delivery.last_attempt_at,
            delivered_at=delivery.delivered_at,
            last_response_code=delivery.last_response_code,
            last_response_body=delivery.last_response_body,
            last_error=delivery.last_error,
            created_at=delivery.created_at,
            updated_at=delivery.updated_at or delivery.created_at,
        )

    def to_model(self) -> WebhookDelivery:
        return WebhookDelivery(
            delivery_id=self.delivery_id,
            endpoint_url=self.endpoint_url,
            http_method=HttpMethod(self.http_method),
            event_type=WebhookEventType(self.event_type),
            event_id=self.event_id,
            payload=self.payload or {},
            headers=self.headers or {},
            correlation_id=self.correlation_id,
            status=DeliveryStatus(self.status),
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            scheduled_at=self.scheduled_at,
            next_attempt_at=self.next_attempt_at,
            last_attempt_at=self.last_attempt_at,
            delivered_at=self.delivered_at,
            last_response_code=self.last_response_code,
            last_response_body=self.last_response_body,
            last_error=self.last_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


__all__ = [
    "InvoiceTable",
    "PlanTable",
    "RecurringSQLModel",
    "SubscriptionTable",
    "WebhookDeliveryTable",
]
