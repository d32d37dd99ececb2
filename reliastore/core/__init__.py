"""
Core module: Type definitions, error hierarchy, configuration and
record-path helpers.

This module provides the foundational abstractions for the engine:
- Result/Either monads for zero-exception control flow
- Error hierarchy classified by engine reaction
- Settings with validation and environment overrides
"""

from reliastore.core.types import (
    Result,
    Ok,
    Err,
    Identity,
    Record,
)
from reliastore.core.errors import (
    ErrorCode,
    ReliaStoreError,
    BackendError,
    LeaseError,
    ConflictError,
    ValidationError,
    MigrationError,
    ReliabilityError,
    SessionError,
)
from reliastore.core.config import StoreSettings
from reliastore.core.clock import Clock, SystemClock, ManualClock

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Identity",
    "Record",
    "ErrorCode",
    "ReliaStoreError",
    "BackendError",
    "LeaseError",
    "ConflictError",
    "ValidationError",
    "MigrationError",
    "ReliabilityError",
    "SessionError",
    "StoreSettings",
    "Clock",
    "SystemClock",
    "ManualClock",
]
