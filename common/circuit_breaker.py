"""
Circuit breaker guarding calls to the external payout provider
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Callable, Any, Optional
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Failing fast
    HALF_OPEN = "HALF_OPEN"  # Probing recovery

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5  # Failures before opening
    reset_timeout: float = 60.0  # Seconds before trying half-open
    success_threshold: int = 3   # Successes needed to close from half-open
    timeout: float = 10.0        # Default operation timeout

class CircuitBreakerException(Exception):
    """Raised when circuit breaker is open"""
    pass

class CircuitBreaker:
    """Fails fast while the provider is unhealthy.

    Only raised exceptions (including timeouts) count as failures; a provider
    answer that says "rejected" is a healthy call.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = time.time()

    def _move_to(self, state: CircuitState):
        self.state = state
        self.success_count = 0
        if state == CircuitState.CLOSED:
            self.failure_count = 0
        self.last_state_change = time.time()

    def _cooled_down(self) -> bool:
        return time.time() - self.last_failure_time >= self.config.reset_timeout

    def _record_success(self):
        if self.state == CircuitState.CLOSED:
            self.failure_count = 0
            return
        self.success_count += 1
        if self.success_count >= self.config.success_threshold:
            self._move_to(CircuitState.CLOSED)
            logger.info(f"Circuit breaker {self.name} closed; provider recovered")

    def _record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == CircuitState.HALF_OPEN:
            self._move_to(CircuitState.OPEN)
            logger.warning(f"Circuit breaker {self.name} re-opened by a failed probe")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._move_to(CircuitState.OPEN)
            logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} consecutive failures")

    async def call(self, func: Callable, *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Execute func under the breaker with a hard timeout.

        Sync callables run in the default executor. On timeout the caller gets
        asyncio.TimeoutError while the worker thread may still finish its I/O.
        """
        if self.state == CircuitState.OPEN:
            if not self._cooled_down():
                raise CircuitBreakerException(f"Circuit breaker {self.name} is open")
            self._move_to(CircuitState.HALF_OPEN)
            logger.info(f"Circuit breaker {self.name} half-open; probing provider")

        budget = self.config.timeout if timeout is None else timeout
        try:
            if asyncio.iscoroutinefunction(func):
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=budget)
            else:
                loop = asyncio.get_running_loop()
                job = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
                result = await asyncio.wait_for(job, timeout=budget)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def get_state(self) -> dict:
        now = time.time()
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "seconds_in_state": round(now - self.last_state_change, 1),
        }

PROVIDER_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=30.0,
    success_threshold=2,
    timeout=15.0
)

provider_circuit_breaker = CircuitBreaker("payout-provider", PROVIDER_CB_CONFIG)

def get_all_circuit_breakers() -> dict:
    """Get status of all circuit breakers"""
    return {
        "payout_provider": provider_circuit_breaker.get_state(),
    }
