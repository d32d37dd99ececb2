"""
Retry Policy: Bounded Attempts with Backoff

Every backend round-trip (record fetch, conditional update, lease update)
goes through ``retry_with_backoff``:
- Bounded attempts (default 3)
- Linear backoff: wait = base x attempt (default), or exponential
- Optional full jitter to spread out competing processes
- Optional per-attempt timeout

A failed attempt is either a raised exception of a retryable type or an
``Err`` returned by the operation. Exhaustion yields
``Err(ReliabilityError.retry_exhausted)`` carrying the last failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from reliastore.core import constants as C
from reliastore.core.types import Result, Ok, Err
from reliastore.core.errors import ReliabilityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffStrategy(Enum):
    LINEAR = auto()       # base x attempt
    EXPONENTIAL = auto()  # base x 2^(attempt - 1)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = C.DEFAULT_RETRIES
    base_delay_s: float = C.DEFAULT_RETRY_BASE_DELAY_S
    max_delay_s: float = 30.0
    strategy: BackoffStrategy = BackoffStrategy.LINEAR
    jitter: bool = False
    attempt_timeout_s: Optional[float] = None
    retryable_exceptions: tuple[Type[Exception], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def immediate(cls, max_attempts: int = C.DEFAULT_RETRIES) -> RetryPolicy:
        """Retries without waiting (tests, in-process backends)."""
        return cls(max_attempts=max_attempts, base_delay_s=0.0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        if self.strategy is BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay_s * (2 ** (attempt - 1))
        else:
            delay = self.base_delay_s * attempt
        delay = min(self.max_delay_s, delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, Any]]],
    policy: Optional[RetryPolicy] = None,
    operation: str = "operation",
) -> Result[T, ReliabilityError]:
    """
    Execute a Result-returning coroutine with retry and backoff.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Retry configuration (default if None)
        operation: Label for logs and the exhaustion error

    Returns:
        Ok with the operation's value, or Err after exhausting attempts
    """
    if policy is None:
        policy = RetryPolicy.default()

    last_error: Optional[str] = None
    last_exception: Optional[Exception] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.attempt_timeout_s is not None:
                result = await asyncio.wait_for(func(), timeout=policy.attempt_timeout_s)
            else:
                result = await func()
        except asyncio.TimeoutError as e:
            last_exception = e
            last_error = f"timed out after {policy.attempt_timeout_s}s"
            logger.debug("%s attempt %d timed out", operation, attempt)
        except policy.retryable_exceptions as e:
            last_exception = e
            last_error = str(e)
            logger.debug("%s attempt %d raised: %s", operation, attempt, e)
        else:
            if result.is_ok():
                return Ok(result.unwrap())
            error = result.error
            last_error = str(error)
            last_exception = error if isinstance(error, Exception) else None
            logger.debug("%s attempt %d failed: %s", operation, attempt, error)

        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

    return Err(ReliabilityError.retry_exhausted(
        operation=operation,
        attempts=policy.max_attempts,
        last_error=last_error or "Unknown error",
        cause=last_exception,
    ))
