"""
Billing system module.

Provides recurring billing capabilities including:
- Plan catalogue and subscription lifecycle
- Billing cycle and proration calculations
- Invoice creation, charging and dunning
- Lifecycle sweeps for trials, past-due escalation and scheduled changes
"""

from dotmac.recurring.billing.engine import BillingEngine
from dotmac.recurring.billing.enums import (
    ChangeTiming,
    IntervalUnit,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
    TransactionType,
)
from dotmac.recurring.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    InvoiceNotFoundError,
    PlanInactiveError,
    PlanNotFoundError,
    ProrationError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from dotmac.recurring.billing.gateway import ChargeGateway, ChargeResult
from dotmac.recurring.billing.lifecycle import SubscriptionStateMachine
from dotmac.recurring.billing.models import Invoice, Plan, ProrationResult, Subscription
from dotmac.recurring.billing.proration import ProrationCalculator, format_proration_summary
from dotmac.recurring.billing.service import PlanService, SubscriptionService

__all__ = [
    "BillingConfigurationError",
    "BillingEngine",
    "BillingError",
    "ChangeTiming",
    "ChargeGateway",
    "ChargeResult",
    "IntervalUnit",
    "Invoice",
    "InvoiceKind",
    "InvoiceNotFoundError",
    "InvoiceStatus",
    "Plan",
    "PlanInactiveError",
    "PlanNotFoundError",
    "PlanService",
    "ProrationCalculator",
    "ProrationError",
    "ProrationResult",
    "Subscription",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionService",
    "SubscriptionStateError",
    "SubscriptionStateMachine",
    "TransactionType",
    "format_proration_summary",
]
