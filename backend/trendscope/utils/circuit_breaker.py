"""
Trendscope — Circuit Breaker

Stops hammering a bar provider that keeps failing.

    CLOSED     calls pass through; consecutive failures are counted
    OPEN       calls are rejected with CircuitOpenError until the cooldown ends
    HALF_OPEN  a single trial call is let through; success closes, failure reopens

Usage::

    breaker = get_breaker("yfinance", failure_threshold=5, recovery_timeout=30)
    bars = breaker.call(lambda: download("AAPL", "1d"))
"""

from __future__ import annotations

import threading
import time
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitOpenError(Exception):
    """Raised instead of calling a provider whose circuit is open."""

    def __init__(self, service: str, retry_after: float):
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"circuit open for '{service}', retry after {retry_after:.0f}s")


class CircuitBreaker:
    """Thread-safe breaker guarding one named provider."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            service_name: Provider identifier used in logs and the registry.
            failure_threshold: Consecutive failures that open the circuit.
            recovery_timeout: Seconds in OPEN before a trial call is allowed.
            clock: Monotonic time source, injectable for tests.
        """
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    log.info("circuit_breaker.half_open", service=self.service_name, elapsed=round(elapsed, 1))
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def call(self, func: Callable[[], T]) -> T:
        """Run ``func`` unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open; ``func`` was not called.
        """
        self.before_call()
        try:
            result = func()
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def before_call(self) -> None:
        """Raise CircuitOpenError when no call may be made right now."""
        if self.state == CircuitState.OPEN:
            retry_after = self.recovery_timeout - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.service_name, max(0.0, retry_after))

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                log.info("circuit_breaker.closed", service=self.service_name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self, exc: Exception) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                log.warning("circuit_breaker.reopened", service=self.service_name, error=str(exc))
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                log.warning(
                    "circuit_breaker.opened",
                    service=self.service_name,
                    failures=self._failure_count,
                    threshold=self.failure_threshold,
                    error=str(exc),
                )

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = 0.0
        log.info("circuit_breaker.reset", service=self.service_name)


# ──────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(
    service_name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 30.0,
) -> CircuitBreaker:
    """Shared breaker per provider name, created on first use."""
    with _registry_lock:
        if service_name not in _breakers:
            _breakers[service_name] = CircuitBreaker(service_name, failure_threshold, recovery_timeout)
        return _breakers[service_name]


def get_all_breaker_states() -> dict[str, str]:
    with _registry_lock:
        return {name: cb.state.name for name, cb in _breakers.items()}
