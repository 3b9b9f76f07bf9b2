"""
Circuit Breaker for Responder Calls

Stops hammering a failing language-model backend. After ``failure_threshold``
consecutive failures the circuit opens and calls fail fast with
``CircuitBreakerError`` until ``recovery_timeout`` has passed; one trial call
is then let through (half-open) and enough successes close it again.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger("companion.core.circuit_breaker")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    failure_threshold: int = 5          # Failures before opening
    recovery_timeout: float = 30.0      # Seconds before trying recovery
    success_threshold: int = 1          # Successes needed to close
    expected_exception: Tuple[Type[BaseException], ...] = (Exception,)


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open."""


class CircuitBreaker:
    """
    Async circuit breaker.

    Single event loop only: state changes happen between awaits, so no lock
    is needed. ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.metrics = {
            "total_failures": 0,
            "total_successes": 0,
            "total_rejections": 0,
            "total_opens": 0,
        }
        logger.debug(f"Circuit breaker '{name}' initialized")

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` under circuit protection."""
        if not self._can_execute():
            self.metrics["total_rejections"] += 1
            raise CircuitBreakerError(f"Circuit breaker '{self.name}' is open")

        try:
            result = await func(*args, **kwargs)
        except self.config.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _can_execute(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if self._clock() - self.last_failure_time >= self.config.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info(f"🔄 Circuit '{self.name}' entering half-open state")
                return True
            return False
        return True  # HALF_OPEN

    def _on_success(self) -> None:
        self.metrics["total_successes"] += 1
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info(f"✅ Circuit '{self.name}' closed - recovered")
        else:
            self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self.metrics["total_failures"] += 1

        if self.state == CircuitState.HALF_OPEN:
            self._open("recovery failed")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._open("failure threshold reached")

    def _open(self, reason: str) -> None:
        self.state = CircuitState.OPEN
        self.metrics["total_opens"] += 1
        logger.warning(f"❌ Circuit '{self.name}' opened - {reason}")

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "metrics": dict(self.metrics),
        }

    def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        logger.info(f"🔄 Circuit '{self.name}' manually reset")

