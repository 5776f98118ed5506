"""
Billing module metrics and monitoring
"""

from decimal import Decimal

from opentelemetry import metrics, trace

from dotmac.recurring.billing.money import to_minor_units
from dotmac.recurring.telemetry import MetricsCollector


class BillingMetrics(MetricsCollector):
    """Billing metrics collector"""

    component = "billing"

    def __init__(
        self,
        meter: metrics.Meter | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        super().__init__(meter, tracer)

        # Charge metrics
        self.charge_succeeded_counter = self._create_counter(
            name="billing.charge.succeeded",
            description="Number of successful subscription charges",
        )
        self.charge_failed_counter = self._create_counter(
            name="billing.charge.failed",
            description="Number of failed subscription charges",
        )
        self.charge_amount_histogram = self._create_histogram(
            name="billing.charge.amount",
            description="Charged amounts",
            unit="cents",
        )

        # Dunning metrics
        self.retry_counter = self._create_counter(
            name="billing.payment.retry",
            description="Payment retry attempts by outcome",
        )
        self.nonpayment_cancellation_counter = self._create_counter(
            name="billing.subscription.cancelled_nonpayment",
            description="Subscriptions cancelled after exhausting payment retries",
        )

        # Sweep health
        self.billing_error_counter = self._create_counter(
            name="billing.sweep.errors",
            description="Unexpected errors while processing a single entity",
        )
        self.proration_amount_histogram = self._create_histogram(
            name="billing.proration.net_amount",
            description="Absolute net proration amounts",
            unit="cents",
        )

    def record_charge_succeeded(self, amount: Decimal, currency: str, sweep: str) -> None:
        attributes = {"currency": currency, "sweep": sweep}
        self.charge_succeeded_counter.add(1, attributes)
        self.charge_amount_histogram.record(to_minor_units(amount, currency), attributes)

    def record_charge_failed(self, failure_code: str | None, sweep: str) -> None:
        self.charge_failed_counter.add(
            1, {"failure_code": failure_code or "unknown", "sweep": sweep}
        )

    def record_retry(self, success: bool, attempt: int) -> None:
        self.retry_counter.add(1, {"success": str(success).lower(), "attempt": attempt})

    def record_nonpayment_cancellation(self) -> None:
        self.nonpayment_cancellation_counter.add(1)

    def record_billing_error(self, sweep: str, error_type: str) -> None:
        self.billing_error_counter.add(1, {"sweep": sweep, "error_type": error_type})

    def record_proration(self, net_amount: Decimal, currency: str, kind: str) -> None:
        self.proration_amount_histogram.record(
            abs(to_minor_units(net_amount, currency)), {"currency": currency, "kind": kind}
        )


# Global metrics instance
_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(metrics: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = metrics
