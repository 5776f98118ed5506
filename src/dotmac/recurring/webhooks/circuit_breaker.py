"""
Per-endpoint circuit breakers for webhook delivery.

CLOSED: deliveries go out. OPEN: deliveries to the endpoint are rescheduled
without a network call until the cooldown passes. HALF_OPEN: one trial delivery
is let through; success closes the breaker, failure re-opens it.

Breaker state is shared by every concurrent delivery, so all reads and updates
happen under the registry lock.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog

from dotmac.recurring.billing.models import utcnow
from dotmac.recurring.webhooks.models import CircuitSnapshot

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


type StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class _EndpointCircuit:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: datetime | None = None
    trial_in_flight: bool = False


class CircuitBreakerRegistry:
    """Thread-safe map of endpoint -> breaker state."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock or utcnow
        self._on_state_change = on_state_change
        self._circuits: dict[str, _EndpointCircuit] = {}
        self._lock = threading.Lock()

    def _circuit(self, endpoint: str) -> _EndpointCircuit:
        return self._circuits.setdefault(endpoint, _EndpointCircuit())

    def _transition(self, endpoint: str, circuit: _EndpointCircuit, target: CircuitState) -> None:
        previous = circuit.state
        if previous == target:
            return
        circuit.state = target
        logger.warning(
            "webhook.circuit.state_changed",
            endpoint=endpoint,
            from_state=previous.value,
            to_state=target.value,
            consecutive_failures=circuit.consecutive_failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(endpoint, previous, target)

    def allow_request(self, endpoint: str, now: datetime | None = None) -> bool:
        """Whether a delivery to ``endpoint`` may use the network now."""
        now = now or self._clock()
        with self._lock:
            circuit = self._circuit(endpoint)
            match circuit.state:
                case CircuitState.CLOSED:
                    return True
                case CircuitState.OPEN:
                    if circuit.opened_at is not None and now - circuit.opened_at < self.cooldown:
                        return False
                    self._transition(endpoint, circuit, CircuitState.HALF_OPEN)
                    circuit.trial_in_flight = True
                    return True
                case CircuitState.HALF_OPEN:
                    if circuit.trial_in_flight:
                        return False
                    circuit.trial_in_flight = True
                    return True

    def record_success(self, endpoint: str) -> None:
        with self._lock:
            circuit = self._circuit(endpoint)
            circuit.consecutive_failures = 0
            circuit.opened_at = None
            circuit.trial_in_flight = False
            self._transition(endpoint, circuit, CircuitState.CLOSED)

    def record_failure(self, endpoint: str, now: datetime | None = None) -> None:
        now = now or self._clock()
        with self._lock:
            circuit = self._circuit(endpoint)
            circuit.consecutive_failures += 1
            circuit.trial_in_flight = False
            if circuit.state == CircuitState.HALF_OPEN or (
                circuit.state == CircuitState.CLOSED
                and circuit.consecutive_failures >= self.failure_threshold
            ):
                circuit.opened_at = now
                self._transition(endpoint, circuit, CircuitState.OPEN)

    def release(self, endpoint: str) -> None:
        """Give back a HALF_OPEN trial slot whose attempt produced no verdict."""
        with self._lock:
            circuit = self._circuits.get(endpoint)
            if circuit is not None:
                circuit.trial_in_flight = False

    def state(self, endpoint: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(endpoint)
            return circuit.state if circuit else CircuitState.CLOSED

    def reset(self, endpoint: str | None = None) -> None:
        with self._lock:
            if endpoint is None:
                self._circuits.clear()
            else:
                self._circuits.pop(endpoint, None)

    def snapshot(self) -> list[CircuitSnapshot]:
        with self._lock:
            return [
                CircuitSnapshot(
                    endpoint=endpoint,
                    state=circuit.state.value,
                    consecutive_failures=circuit.consecutive_failures,
                    opened_at=circuit.opened_at,
                )
                for endpoint, circuit in sorted(self._circuits.items())
            ]


__all__ = ["CircuitBreakerRegistry", "CircuitState"]
