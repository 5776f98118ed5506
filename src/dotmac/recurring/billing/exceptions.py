"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Provides error handling with status codes, context, and recovery hints.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code a caller-facing API would use
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


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class SubscriptionStateError(SubscriptionError):
    """Invalid subscription state transition error."""

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
            recovery_hint=f"Cannot transition from {current_state} to {requested_state}. Check subscription status first.",
        )
        self.current_state = current_state
        self.requested_state = requested_state
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        self.status_code = 409


class PlanError(BillingError):
    """Plan-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PLAN_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class PlanNotFoundError(PlanError):
    """Subscription plan not found error."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class PlanInactiveError(PlanError):
    """Plan exists but cannot accept new subscriptions or changes."""

    def __init__(self, message: str, plan_id: str) -> None:
        super().__init__(
            message,
            context={"plan_id": plan_id},
            recovery_hint="Choose an active plan",
        )
        self.error_code = "PLAN_INACTIVE"
        self.status_code = 409


class DuplicatePlanError(PlanError):
    """Plan code already in use."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(
            message,
            context={"code": code},
            recovery_hint="Use a unique plan code or update the existing plan",
        )
        self.error_code = "DUPLICATE_PLAN"
        self.status_code = 409


class PlanIntervalChangeError(PlanError):
    """Billing interval change rejected while subscriptions depend on it."""

    def __init__(self, message: str, plan_id: str, active_subscriptions: int) -> None:
        super().__init__(
            message,
            context={"plan_id": plan_id, "active_subscriptions": active_subscriptions},
            recovery_hint="Create a new plan and migrate subscriptions to it instead",
        )
        self.error_code = "PLAN_INTERVAL_LOCKED"
        self.status_code = 409


class InvoiceError(BillingError):
    """Invoice-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "INVOICE_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class InvoiceNotFoundError(InvoiceError):
    """Invoice not found error."""

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the invoice ID and ensure it exists",
        )
        self.error_code = "INVOICE_NOT_FOUND"
        self.status_code = 404


class ProrationError(BillingError):
    """Proration could not be computed or failed its sanity checks."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "PRORATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint or "Check the subscription period boundaries and plan prices",
        )


class PaymentError(BillingError):
    """Payment processing errors.

    A charge gateway may raise this instead of returning a declined
    ``ChargeResult``; the engine records it as a decline carrying
    ``failure_code``.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
        *,
        failure_code: str = "payment_error",
        permanent: bool = False,
    ):
        self.failure_code = failure_code
        self.permanent = permanent
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(self, message: str, config_key: str | None = None) -> None:
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "CONFIGURATION_ERROR",
            status_code=500,
            context=context,
            recovery_hint="Check billing configuration settings",
        )
