"""
Core types for reliastore

Every expected failure (lease contention, version conflicts, rejected
writes, backend faults) comes back as an ``Err`` value rather than a
raised exception; exceptions are left for programming errors.

    loaded = await store.load(42)
    if loaded.is_err():
        log.warning("load refused", error=str(loaded.error))
        return
    record = loaded.unwrap()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, Literal, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome."""

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed outcome carrying a ``ReliaStoreError`` (or a plain message)."""

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """Unwrapping a failure is a bug in the caller."""
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[E]]

# A connected client (player id, user id, ...). Rendered with ``str`` when
# building backend keys.
Identity = Union[str, int]

# JSON-compatible record content.
Record = dict[str, Any]
