"""
Webhook delivery metrics
"""

from opentelemetry import metrics, trace

from dotmac.recurring.telemetry import MetricsCollector


class WebhookMetrics(MetricsCollector):
    """Webhook metrics collector"""

    component = "webhooks"

    def __init__(
        self,
        meter: metrics.Meter | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        super().__init__(meter, tracer)

        self.delivered_counter = self._create_counter(
            name="webhooks.delivery.succeeded",
            description="Webhook deliveries acknowledged with 2xx",
        )
        self.failed_counter = self._create_counter(
            name="webhooks.delivery.failed",
            description="Webhook delivery attempts that did not succeed",
        )
        self.duplicate_counter = self._create_counter(
            name="webhooks.delivery.duplicate",
            description="Events suppressed as duplicates",
        )
        self.circuit_state_counter = self._create_counter(
            name="webhooks.circuit.state_change",
            description="Circuit breaker state transitions",
        )
        self.circuit_skip_counter = self._create_counter(
            name="webhooks.circuit.skipped",
            description="Deliveries rescheduled because the endpoint circuit was open",
        )
        self.cleanup_counter = self._create_counter(
            name="webhooks.cleanup.deleted",
            description="Terminal delivery records removed by retention",
        )
        self.duration_histogram = self._create_histogram(
            name="webhooks.delivery.duration",
            description="HTTP round trip for webhook deliveries",
            unit="ms",
        )

    def record_delivered(self, event_type: str, duration_ms: float) -> None:
        self.delivered_counter.add(1, {"event_type": event_type})
        self.duration_histogram.record(duration_ms, {"event_type": event_type})

    def record_failed(self, event_type: str, reason: str, terminal: bool) -> None:
        self.failed_counter.add(
            1, {"event_type": event_type, "reason": reason, "terminal": str(terminal).lower()}
        )

    def record_duplicate(self, event_type: str) -> None:
        self.duplicate_counter.add(1, {"event_type": event_type})

    def record_circuit_state(self, endpoint: str, from_state: str, to_state: str) -> None:
        self.circuit_state_counter.add(
            1, {"endpoint": endpoint, "from_state": from_state, "to_state": to_state}
        )

    def record_circuit_skip(self, endpoint: str) -> None:
        self.circuit_skip_counter.add(1, {"endpoint": endpoint})

    def record_cleanup(self, deleted: int) -> None:
        if deleted:
            self.cleanup_counter.add(deleted)


# Global metrics instance
_webhook_metrics: WebhookMetrics | None = None


def get_webhook_metrics() -> WebhookMetrics:
    """Get the global webhook metrics instance"""
    global _webhook_metrics
    if _webhook_metrics is None:
        _webhook_metrics = WebhookMetrics()
    return _webhook_metrics


def set_webhook_metrics(metrics: WebhookMetrics | None) -> None:
    """Set the global webhook metrics instance"""
    global _webhook_metrics
    _webhook_metrics = metrics


__all__ = ["WebhookMetrics", "get_webhook_metrics", "set_webhook_metrics"]
