"""
Circuit Breaker

Guards the payment rails and the push gateway. A rail that keeps failing is
short-circuited so settlement requests fail fast instead of each waiting out
the confirmation timeout; the pay flow then falls back to the card rail or
tells the payer to retry.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ParamSpec, TypeVar

from splitledger.core.exceptions import CircuitBreakerOpenError
from splitledger.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    CLOSED counts consecutive failures; at the threshold it goes OPEN and
    rejects calls until ``timeout_seconds`` pass, then lets a few HALF_OPEN
    calls through. Enough of those succeeding closes it, any failure reopens.
    """

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        # threading.Lock: Celery tasks run each call on a fresh event loop
        self._lock = threading.Lock()

    def _move_to(self, state: CircuitState) -> None:
        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={"service": self.service_name, "old_state": self.state.value, "new_state": state.value},
        )
        self.state = state
        self._successes = 0
        self._half_open_calls = 0
        if state == CircuitState.CLOSED:
            self._failures = 0
        elif state == CircuitState.OPEN:
            self._opened_at = time.monotonic()

    def _retry_after(self) -> float:
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self.state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self._retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    async def execute(self, func: Callable[P, Awaitable[T]], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Await ``func`` under breaker protection. Any exception counts as a failure.

        Raises:
            CircuitBreakerOpenError: the breaker is open
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self._retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


# Rails wait longer before probing: a flapping bank costs payers a 30s confirmation wait each
_SERVICE_CONFIGS = {
    "bank_debit": CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=60.0),
    "card": CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=60.0),
    "push": CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
}

_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_circuit_breaker(service_name: str) -> CircuitBreaker:
    """Process-wide breaker for one external service"""
    with _breakers_lock:
        if service_name not in _breakers:
            _breakers[service_name] = CircuitBreaker(service_name, _SERVICE_CONFIGS.get(service_name))
        return _breakers[service_name]


def reset_circuit_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()


def get_bank_debit_circuit_breaker() -> CircuitBreaker:
    return get_circuit_breaker("bank_debit")


def get_card_circuit_breaker() -> CircuitBreaker:
    return get_circuit_breaker("card")


def get_push_circuit_breaker() -> CircuitBreaker:
    return get_circuit_breaker("push")
