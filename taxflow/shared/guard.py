"""Timeout and circuit-breaker policy around external provider calls.

Provider SDK clients are synchronous, so calls run on a worker thread under
``asyncio.wait_for``. A timed-out thread is left to finish on its own; its
result is dropped.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from taxflow.shared import metrics
from taxflow.shared.config import Settings
from taxflow.shared.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    closed -> open after ``failure_threshold`` failures in a row;
    open -> half-open once ``reset_seconds`` have passed; a successful
    trial call closes it again, a failed one re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int,
        reset_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_seconds:
            return "half_open"
        return "open"

    def allow(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.failure_threshold or self.state == "half_open":
            self._opened_at = self._clock()


class ProviderGuard:
    """Runs provider calls with a timeout and a circuit breaker.

    Args:
        port: Port name used in logs and metrics (classification, vision)
        error_class: ExternalServiceError subclass raised on timeout/open circuit
        timeout_seconds: Upper bound for a single call
        breaker: Circuit breaker instance
    """

    def __init__(
        self,
        port: str,
        error_class: type[ExternalServiceError],
        timeout_seconds: float,
        breaker: CircuitBreaker,
    ) -> None:
        self.port = port
        self.error_class = error_class
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker

    @classmethod
    def from_settings(
        cls,
        port: str,
        error_class: type[ExternalServiceError],
        settings: Settings,
        timeout_seconds: float,
    ) -> "ProviderGuard":
        """Build a guard with the breaker thresholds from application settings."""
        return cls(
            port=port,
            error_class=error_class,
            timeout_seconds=timeout_seconds,
            breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                reset_seconds=settings.circuit_breaker_reset_seconds,
            ),
        )

    async def call(self, func: Callable[..., T], *args: Any) -> T:
        """Invoke ``func(*args)`` on a thread, bounded by the timeout.

        Raises:
            ExternalServiceError: On timeout, open circuit, or provider failure
        """
        if not self.breaker.allow():
            metrics.provider_requests_total.labels(port=self.port, status="open").inc()
            raise self.error_class(f"{self.port} provider circuit is open")

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self.breaker.record_failure()
            metrics.provider_requests_total.labels(port=self.port, status="timeout").inc()
            logger.warning(f"{self.port} provider timed out after {self.timeout_seconds}s")
            raise self.error_class(
                f"{self.port} provider timed out after {self.timeout_seconds}s"
            ) from e
        except ExternalServiceError:
            self.breaker.record_failure()
            metrics.provider_requests_total.labels(port=self.port, status="failed").inc()
            raise

        self.breaker.record_success()
        metrics.provider_requests_total.labels(port=self.port, status="success").inc()
        return result
