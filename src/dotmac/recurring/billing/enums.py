"""Closed enumerations shared by the billing components."""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class InvoiceStatus(str, Enum):
    """Invoice payment states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class InvoiceKind(str, Enum):
    """Why an invoice was raised. Only SUBSCRIPTION invoices are one-per-period."""

    SUBSCRIPTION = "SUBSCRIPTION"
    PRORATION = "PRORATION"
    SETUP_FEE = "SETUP_FEE"


class IntervalUnit(str, Enum):
    """Billing interval units."""

    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    YEAR = "YEAR"

    @property
    def max_count(self) -> int:
        """Largest interval count accepted for this unit."""
        match self:
            case IntervalUnit.DAY:
                return 365
            case IntervalUnit.WEEK:
                return 52
            case IntervalUnit.MONTH:
                return 12
            case IntervalUnit.YEAR:
                return 5


class TransactionType(str, Enum):
    """Payment transaction types reported by the charge collaborator."""

    PURCHASE = "PURCHASE"
    AUTHORIZE = "AUTHORIZE"
    CAPTURE = "CAPTURE"
    VOID = "VOID"
    REFUND = "REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class ChargeFailureKind(str, Enum):
    """Classification of an unsuccessful charge."""

    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


class ChangeTiming(str, Enum):
    """When a plan change takes effect."""

    IMMEDIATE = "IMMEDIATE"
    END_OF_PERIOD = "END_OF_PERIOD"


class PendingChangeKind(str, Enum):
    """Scheduled directives a subscription can carry."""

    CANCELLATION = "CANCELLATION"
    PLAN_CHANGE = "PLAN_CHANGE"


__all__ = [
    "ChangeTiming",
    "ChargeFailureKind",
    "IntervalUnit",
    "InvoiceKind",
    "InvoiceStatus",
    "PendingChangeKind",
    "SubscriptionStatus",
    "TransactionType",
]
