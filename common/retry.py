"""
Backoff retries for provider queries.

Only idempotent reads go through here: status lookups, float balance, the bank
list and account verification. Transfer initiation is never repeated.
"""
import asyncio
import random
from typing import Callable, Any, Optional, List
import logging

logger = logging.getLogger(__name__)

class TransientCallError(Exception):
    """A remote call failed in a way that may succeed on the next attempt."""

class RetryConfig:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientCallError]

    def should_retry(self, error: Exception) -> bool:
        return isinstance(error, tuple(self.retryable_exceptions))

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the given failed attempt (1-based), capped at max_delay.

    With jitter the delay lands somewhere in the upper half of the backoff step.
    """
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call func until it returns, raises a non-retryable error, or runs out of attempts.

    The last retryable error is re-raised once attempts are exhausted.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while True:
        attempt += 1
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                logger.warning(f"{name} failed with non-retryable {type(e).__name__}: {e}")
                raise
            if attempt >= config.max_attempts:
                logger.error(f"{name} still failing after {config.max_attempts} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"{name} attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

# Named configurations
PROVIDER_QUERY_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=[TransientCallError, asyncio.TimeoutError],
)
