"""
Reliability module: bounded retry with backoff for backend round-trips.
"""

from reliastore.reliability.retry import (
    BackoffStrategy,
    RetryPolicy,
    retry_with_backoff,
)

__all__ = [
    "BackoffStrategy",
    "RetryPolicy",
    "retry_with_backoff",
]
