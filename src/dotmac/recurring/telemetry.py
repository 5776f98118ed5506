"""
OpenTelemetry setup for tracing and metrics.

Configures OTLP exporters when enabled and exposes meter/tracer accessors plus a
small base class for metric collectors that degrade to no-op instruments.
"""

import contextlib
import logging
from contextlib import AbstractContextManager
from typing import Any

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from dotmac.recurring.settings import Settings, settings

_stdlib_logger = logging.getLogger(__name__)


def create_resource(config: Settings | None = None) -> Resource:
    """Create OpenTelemetry resource with service information."""
    cfg = config or settings
    return Resource.create(
        {
            SERVICE_NAME: cfg.observability.otel_service_name,
            SERVICE_VERSION: cfg.app_version,
            DEPLOYMENT_ENVIRONMENT: cfg.environment.value,
        }
    )


def setup_telemetry(config: Settings | None = None) -> bool:
    """
    Install tracer and meter providers with OTLP/HTTP exporters.

    Returns:
        True when providers were installed, False when telemetry is disabled.
    """
    cfg = config or settings
    logger = structlog.get_logger(__name__)

    if not cfg.observability.otel_enabled:
        logger.debug("telemetry.disabled")
        return False

    resource = create_resource(cfg)
    endpoint = (cfg.observability.otel_endpoint or "").rstrip("/")

    if cfg.observability.enable_tracing:
        tracer_provider = TracerProvider(resource=resource)
        if endpoint:
            tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces", timeout=5))
            )
        trace.set_tracer_provider(tracer_provider)

    if cfg.observability.enable_metrics:
        readers = []
        if endpoint:
            readers.append(
                PeriodicExportingMetricReader(
                    exporter=OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics", timeout=30),
                    export_interval_millis=60000,
                )
            )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    logger.info(
        "telemetry.configured",
        service_name=cfg.observability.otel_service_name,
        endpoint=endpoint or None,
        tracing_enabled=cfg.observability.enable_tracing,
        metrics_enabled=cfg.observability.enable_metrics,
    )
    return True


def get_tracer(name: str, version: str | None = None) -> trace.Tracer:
    """
    Get a tracer for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Tracer instance
    """
    return trace.get_tracer(name, version or "")


def get_meter(name: str, version: str | None = None) -> metrics.Meter:
    """
    Get a meter for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Meter instance
    """
    return metrics.get_meter(name, version or "")


class _NoopInstrument:
    """Minimal no-op instrument used when no meter is available."""

    def add(self, *args: Any, **kwargs: Any) -> None:  # pragma: no cover - trivial
        return None

    def record(self, *args: Any, **kwargs: Any) -> None:  # pragma: no cover - trivial
        return None


type CounterInstrument = metrics.Counter | _NoopInstrument
type HistogramInstrument = metrics.Histogram | _NoopInstrument
type SpanContextManager = AbstractContextManager[trace.Span | None]


class MetricsCollector:
    """Base for component metric collectors.

    Instruments fall back to no-ops when the meter cannot create them, so a
    collector is always safe to call.
    """

    component = "recurring"

    def __init__(
        self,
        meter: metrics.Meter | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.meter: metrics.Meter | None
        try:
            self.meter = meter or get_meter(self.component)
        except Exception as exc:  # pragma: no cover - provider misconfiguration
            _stdlib_logger.debug("%s.metrics.meter_unavailable: %s", self.component, exc)
            self.meter = None

        self.tracer: trace.Tracer | None
        try:
            self.tracer = tracer or get_tracer(self.component)
        except Exception as exc:  # pragma: no cover - provider misconfiguration
            _stdlib_logger.debug("%s.metrics.tracer_unavailable: %s", self.component, exc)
            self.tracer = None

    def _create_counter(self, name: str, description: str, unit: str = "1") -> CounterInstrument:
        if not self.meter:
            return _NoopInstrument()
        try:
            return self.meter.create_counter(name=name, description=description, unit=unit)
        except Exception as exc:  # pragma: no cover - provider misconfiguration
            _stdlib_logger.debug("%s.metrics.counter_unavailable (%s): %s", self.component, name, exc)
            return _NoopInstrument()

    def _create_histogram(
        self, name: str, description: str, unit: str = "1"
    ) -> HistogramInstrument:
        if not self.meter:
            return _NoopInstrument()
        try:
            return self.meter.create_histogram(name=name, description=description, unit=unit)
        except Exception as exc:  # pragma: no cover - provider misconfiguration
            _stdlib_logger.debug(
                "%s.metrics.histogram_unavailable (%s): %s", self.component, name, exc
            )
            return _NoopInstrument()

    def trace_operation(self, name: str, **attributes: Any) -> SpanContextManager:
        """Create an internal span, or a null context when tracing is off."""
        if not self.tracer:
            return contextlib.nullcontext(None)
        return self.tracer.start_as_current_span(
            f"{self.component}.{name}",
            kind=trace.SpanKind.INTERNAL,
            attributes={key: str(value) for key, value in attributes.items() if value is not None},
        )


__all__ = [
    "MetricsCollector",
    "create_resource",
    "get_meter",
    "get_tracer",
    "setup_telemetry",
]
