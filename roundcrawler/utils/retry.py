"""
Retry with exponential backoff for commit-time sink steps.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .config import SinkConfig

logger = logging.getLogger(__name__)

R = TypeVar("R")


class RetryError(Exception):
    """Raised when all retry attempts have been exhausted"""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_exception}")


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a failing step is retried."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    @classmethod
    def from_config(cls, config: SinkConfig) -> 'RetryPolicy':
        # abort means a single attempt
        if config.on_failure == 'abort':
            return cls(max_attempts=1, base_delay=0.0, max_delay=0.0)
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.backoff_seconds,
            max_delay=config.max_backoff_seconds,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)


async def retry_with_policy(func: Callable[[], Awaitable[R]], policy: RetryPolicy,
                            description: str = "operation") -> R:
    """
    Call ``func`` until it succeeds or the policy is exhausted.

    Raises:
        RetryError: wrapping the last exception once all attempts fail
    """
    last_exception: Exception = RuntimeError("no attempt made")
    for attempt in range(policy.max_attempts):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_exception = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.calculate_delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RetryError(policy.max_attempts, last_exception)
