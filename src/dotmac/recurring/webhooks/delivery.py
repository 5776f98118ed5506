"""
Webhook delivery engine.

``emit`` records one delivery per (event, endpoint) after duplicate
suppression; ``deliver`` performs a single HTTP attempt and moves the record
through PENDING/RETRYING -> PROCESSING -> DELIVERED | RETRYING | FAILED.
``process_pending_retries`` and ``cleanup`` are the periodic sweeps.
"""

import json
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from dotmac.recurring.billing.models import utcnow
from dotmac.recurring.logging import bound_context, current_correlation_id, new_correlation_id
from dotmac.recurring.persistence.base import WebhookDeliveryRepository
from dotmac.recurring.settings import Settings, settings
from dotmac.recurring.sweeps import EntityOutcome, SweepReport, run_isolated
from dotmac.recurring.webhooks.backoff import RetryPolicy
from dotmac.recurring.webhooks.circuit_breaker import CircuitBreakerRegistry, CircuitState
from dotmac.recurring.webhooks.exceptions import WebhookDeliveryNotFoundError
from dotmac.recurring.webhooks.metrics import WebhookMetrics, get_webhook_metrics
from dotmac.recurring.webhooks.models import (
    DeliveryStatus,
    EmitResult,
    HttpMethod,
    RetryStatistics,
    WebhookDelivery,
    WebhookEventType,
)
from dotmac.recurring.webhooks.signing import SIGNATURE_PREFIX, generate_signature

logger = structlog.get_logger(__name__)

MAX_RESPONSE_BODY = 2000

SWEEP_WEBHOOK_RETRY = "webhook_retry"


def is_retryable_status(status_code: int) -> bool:
    """429 and 5xx are worth retrying; any other 4xx is a rejection."""
    return status_code == 429 or not 400 <= status_code < 500


class WebhookDeliveryService:
    """Delivers outbound events to HTTP endpoints."""

    def __init__(
        self,
        repository: WebhookDeliveryRepository,
        *,
        config: Settings.WebhookSettings | None = None,
        policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        metrics: WebhookMetrics | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or settings.webhooks
        self.policy = policy or RetryPolicy.from_settings(self.config.retry)
        self.metrics = metrics or get_webhook_metrics()
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.config.circuit_breaker.failure_threshold,
            cooldown_seconds=self.config.circuit_breaker.cooldown_seconds,
            on_state_change=self._on_circuit_change,
        )
        self._client = http_client
        self._clock = clock or utcnow

    # ==================== Emission ====================

    async def emit(
        self,
        endpoint_url: str,
        event_type: WebhookEventType,
        event_id: str,
        payload: dict[str, Any],
        *,
        http_method: HttpMethod = HttpMethod.POST,
        headers: dict[str, str] | None = None,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
        deliver_now: bool = True,
        now: datetime | None = None,
    ) -> EmitResult:
        """
        Record an outbound event for one endpoint and optionally send it at once.

        Args:
            endpoint_url: Receiver URL
            event_type: Webhook event type
            event_id: Caller's event id; with the event type and endpoint it
                identifies duplicates
            payload: JSON-serialisable body
            http_method: POST, PUT or PATCH
            headers: Extra headers; standard headers take precedence
            correlation_id: Defaults to the bound logging context's id
            max_attempts: Overrides the retry policy's limit for this delivery
            deliver_now: Attempt delivery before returning
            now: Emission instant, defaults to the service clock

        Returns:
            The delivery and whether it was suppressed as a duplicate
        """
        now = now or self._clock()
        duplicates = self.config.duplicate_detection
        if duplicates.enabled:
            since = now - timedelta(minutes=duplicates.window_minutes)
            existing = await self.repository.find_recent(event_id, event_type, endpoint_url, since)
            if existing is not None:
                self.metrics.record_duplicate(event_type.value)
                logger.info(
                    "webhook.delivery.duplicate",
                    delivery_id=existing.delivery_id,
                    event_id=event_id,
                    event_type=event_type.value,
                    endpoint=endpoint_url,
                )
                return EmitResult(delivery=existing, duplicate=True)

        delivery = WebhookDelivery(
            endpoint_url=endpoint_url,
            http_method=http_method,
            event_type=event_type,
            event_id=event_id,
            payload=payload,
            headers=headers or {},
            correlation_id=correlation_id or current_correlation_id() or new_correlation_id(),
            max_attempts=max_attempts or self.policy.max_attempts,
            scheduled_at=now,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.repository.save(delivery)
        logger.info(
            "webhook.delivery.created",
            delivery_id=delivery.delivery_id,
            event_id=event_id,
            event_type=event_type.value,
            endpoint=endpoint_url,
        )

        if deliver_now:
            delivery = await self.deliver(delivery.delivery_id, now=now)
        return EmitResult(delivery=delivery)

    # ==================== Delivery ====================

    async def deliver(self, delivery_id: str, now: datetime | None = None) -> WebhookDelivery:
        """Make one delivery attempt and return the updated record."""
        delivery, _ = await self._attempt(delivery_id, now or self._clock())
        return delivery

    async def _attempt(
        self, delivery_id: str, now: datetime
    ) -> tuple[WebhookDelivery, EntityOutcome]:
        delivery = await self.repository.get(delivery_id)
        if delivery is None:
            raise WebhookDeliveryNotFoundError(delivery_id)
        if delivery.status.is_terminal:
            return delivery, EntityOutcome.SKIPPED

        endpoint = delivery.endpoint_url
        if not self.breakers.allow_request(endpoint, now):
            next_attempt = self.policy.next_attempt_at(max(delivery.attempt_count - 1, 0), now)
            delivery.schedule_retry(next_attempt, "circuit open", now)
            await self.repository.save(delivery)
            self.metrics.record_circuit_skip(endpoint)
            logger.info(
                "webhook.delivery.circuit_open",
                delivery_id=delivery_id,
                endpoint=endpoint,
                next_attempt_at=next_attempt.isoformat(),
            )
            return delivery, EntityOutcome.SKIPPED

        claimed = await self.repository.claim(delivery_id, now)
        if claimed is None:
            self.breakers.release(endpoint)
            current = await self.repository.get(delivery_id)
            return current or delivery, EntityOutcome.SKIPPED
        delivery = claimed

        body = json.dumps(delivery.payload, default=str, separators=(",", ":")).encode("utf-8")
        signature = self._sign(body)
        headers = self._build_headers(delivery, signature, now)

        started = time.perf_counter()
        with bound_context(
            correlation_id=delivery.correlation_id, delivery_id=delivery_id, endpoint=endpoint
        ):
            try:
                response = await self._send(delivery, body, headers)
            except httpx.TimeoutException:
                self.breakers.record_failure(endpoint, now)
                return await self._retry_or_fail(delivery, "timeout", now), self._outcome_of(delivery)
            except httpx.TransportError as exc:
                self.breakers.record_failure(endpoint, now)
                error = f"transport error: {exc}"
                return await self._retry_or_fail(delivery, error, now), self._outcome_of(delivery)
            except Exception as exc:
                self.breakers.release(endpoint)
                logger.error("webhook.delivery.error", error=str(exc), exc_info=True)
                return (
                    await self._retry_or_fail(delivery, f"{type(exc).__name__}: {exc}", now),
                    self._outcome_of(delivery),
                )

            duration_ms = (time.perf_counter() - started) * 1000
            delivery.record_response(response.status_code, response.text[:MAX_RESPONSE_BODY])

            if 200 <= response.status_code < 300:
                self.breakers.record_success(endpoint)
                delivery.mark_delivered(now)
                await self.repository.save(delivery)
                self.metrics.record_delivered(delivery.event_type.value, duration_ms)
                logger.info(
                    "webhook.delivery.succeeded",
                    status_code=response.status_code,
                    attempt=delivery.attempt_count,
                    duration_ms=round(duration_ms, 2),
                )
                return delivery, EntityOutcome.SUCCEEDED

            error = f"HTTP {response.status_code}"
            if not is_retryable_status(response.status_code):
                self.breakers.release(endpoint)
                delivery.mark_failed(error, now)
                await self.repository.save(delivery)
                self.metrics.record_failed(delivery.event_type.value, "rejected", terminal=True)
                logger.warning(
                    "webhook.delivery.rejected",
                    status_code=response.status_code,
                    attempt=delivery.attempt_count,
                )
                return delivery, EntityOutcome.FAILED

            self.breakers.record_failure(endpoint, now)
            return await self._retry_or_fail(delivery, error, now), self._outcome_of(delivery)

    async def _retry_or_fail(
        self, delivery: WebhookDelivery, error: str, now: datetime
    ) -> WebhookDelivery:
        if self.policy.exhausted(delivery.attempt_count, delivery.max_attempts):
            delivery.mark_failed(error, now)
            self.metrics.record_failed(delivery.event_type.value, "exhausted", terminal=True)
            logger.warning(
                "webhook.delivery.failed",
                delivery_id=delivery.delivery_id,
                attempts=delivery.attempt_count,
                error=error,
            )
        else:
            next_attempt = self.policy.next_attempt_at(delivery.attempt_count - 1, now)
            delivery.schedule_retry(next_attempt, error, now)
            self.metrics.record_failed(delivery.event_type.value, "retryable", terminal=False)
            logger.info(
                "webhook.delivery.retry_scheduled",
                delivery_id=delivery.delivery_id,
                attempt=delivery.attempt_count,
                next_attempt_at=next_attempt.isoformat(),
                error=error,
            )
        await self.repository.save(delivery)
        return delivery

    @staticmethod
    def _outcome_of(delivery: WebhookDelivery) -> EntityOutcome:
        if delivery.status == DeliveryStatus.DELIVERED:
            return EntityOutcome.SUCCEEDED
        return EntityOutcome.FAILED

    async def _send(
        self, delivery: WebhookDelivery, body: bytes, headers: dict[str, str]
    ) -> httpx.Response:
        timeout = self.config.timeout_seconds
        if self._client is not None:
            return await self._client.request(
                delivery.http_method.value,
                delivery.endpoint_url,
                content=body,
                headers=headers,
                timeout=timeout,
            )
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(
                delivery.http_method.value,
                delivery.endpoint_url,
                content=body,
                headers=headers,
            )

    def _sign(self, body: bytes) -> str | None:
        secret = self.config.signing_secret
        if not secret:
            return None
        return f"{SIGNATURE_PREFIX}{self._generate_signature(body, secret)}"

    def _generate_signature(self, payload: bytes, secret: str) -> str:
        """Generate HMAC-SHA256 signature for webhook payload."""
        return generate_signature(payload, secret)

    def _build_headers(
        self,
        delivery: WebhookDelivery,
        signature: str | None,
        now: datetime,
    ) -> dict[str, str]:
        """Build HTTP headers for webhook request. Standard headers win over caller ones."""
        headers = dict(delivery.headers)
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self.config.user_agent,
                "X-Webhook-Id": delivery.delivery_id,
                "X-Webhook-Event-Id": delivery.event_id,
                "X-Webhook-Event-Type": delivery.event_type.value,
                "X-Webhook-Attempt": str(delivery.attempt_count),
                "X-Webhook-Timestamp": str(int(now.timestamp())),
            }
        )
        if delivery.correlation_id:
            headers["X-Correlation-ID"] = delivery.correlation_id
        if signature:
            headers["X-Webhook-Signature"] = signature
        return headers

    def _on_circuit_change(self, endpoint: str, previous: CircuitState, current: CircuitState) -> None:
        self.metrics.record_circuit_state(endpoint, previous.value, current.value)

    # ==================== Sweeps ====================

    async def process_pending_retries(
        self, now: datetime | None = None, limit: int | None = None
    ) -> SweepReport:
        """Attempt every delivery whose next attempt time has arrived."""
        now = now or self._clock()
        report = SweepReport(SWEEP_WEBHOOK_RETRY, now)
        with bound_context(sweep=SWEEP_WEBHOOK_RETRY), self.metrics.trace_operation(
            "sweep.webhook_retry"
        ):
            await self._recover_stale(now)
            ready = await self.repository.list_ready_for_retry(now, limit)

            async def attempt(delivery_id: str) -> EntityOutcome:
                _, outcome = await self._attempt(delivery_id, now)
                return outcome

            await run_isolated(
                report,
                [delivery.delivery_id for delivery in ready],
                attempt,
                concurrency=self.config.max_concurrency,
            )
            logger.info("webhook.sweep.completed", **report.as_dict())
        return report

    async def _recover_stale(self, now: datetime) -> int:
        """Deliveries left in PROCESSING by a crashed worker go back to RETRYING."""
        cutoff = now - timedelta(minutes=self.config.stale_processing_minutes)
        recovered = 0
        for delivery in await self.repository.list_stale_processing(cutoff):
            if self.policy.exhausted(delivery.attempt_count, delivery.max_attempts):
                delivery.mark_failed("processing interrupted", now)
            else:
                delivery.schedule_retry(now, "processing interrupted", now)
            await self.repository.save(delivery)
            recovered += 1
            logger.warning(
                "webhook.delivery.recovered",
                delivery_id=delivery.delivery_id,
                status=delivery.status.value,
            )
        return recovered

    async def cleanup(self, now: datetime | None = None) -> int:
        """Remove DELIVERED and FAILED records past their retention windows."""
        cleanup = self.config.cleanup
        if not cleanup.enabled:
            return 0
        now = now or self._clock()
        deleted = await self.repository.delete_terminal_before(
            delivered_before=now - timedelta(days=cleanup.delivered_retention_days),
            failed_before=now - timedelta(days=cleanup.failed_retention_days),
        )
        self.metrics.record_cleanup(deleted)
        logger.info("webhook.cleanup.completed", deleted=deleted)
        return deleted

    async def get_retry_statistics(self) -> RetryStatistics:
        counts = await self.repository.count_by_status()
        return RetryStatistics(
            by_status=counts,
            total=sum(counts.values()),
            pending_retries=counts.get(DeliveryStatus.PENDING, 0)
            + counts.get(DeliveryStatus.RETRYING, 0),
            circuits=self.breakers.snapshot(),
        )


__all__ = ["SWEEP_WEBHOOK_RETRY", "WebhookDeliveryService", "is_retryable_status"]
