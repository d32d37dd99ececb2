"""
Error Hierarchy for reliastore

Design Principles:
- Expected failures travel as Err(...) values, not raised exceptions
- Every error carries a code, a human-readable message and context
- Errors are classified by how the engine reacts to them

Taxonomy:
    BackendError     - transient network/timeout faults; retried with backoff
    LeaseError       - contention with a live owner; surfaced as rejection
    ConflictError    - version regression at save time; surfaced as event
    ValidationError  - schema/validator mismatch; advisory on load,
                       blocking on explicit writes
    MigrationError   - one transform failed; logged and skipped
    SessionError     - caller addressed a session in the wrong state
    ReliabilityError - retry budget exhausted

Usage:
    result = await engine.save(identity)
    match result:
        case Ok(outcome):
            ...
        case Err(ConflictError() as err):
            reload_and_retry(err.context)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4



# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Backend errors
    - 2xxx: Lease errors
    - 3xxx: Conflict errors
    - 4xxx: Validation errors
    - 5xxx: Migration errors
    - 6xxx: Reliability errors
    - 7xxx: Session errors
    """

    # Backend errors (1xxx)
    BACKEND_UNAVAILABLE = 1001
    BACKEND_TIMEOUT = 1002
    BACKEND_CORRUPT_PAYLOAD = 1003
    BACKEND_TRANSACTION_ABORTED = 1004

    # Lease errors (2xxx)
    LEASE_HELD_BY_OTHER = 2001

    # Conflict errors (3xxx)
    CONFLICT_VERSION_REGRESSION = 3001

    # Validation errors (4xxx)
    VALIDATION_MISSING_FIELD = 4001
    VALIDATION_TYPE_MISMATCH = 4002
    VALIDATION_REJECTED = 4003
    VALIDATION_INVALID_JSON = 4004

    # Migration errors (5xxx)
    MIGRATION_TRANSFORM_FAILED = 5001
    MIGRATION_INVALID_RESULT = 5002

    # Reliability errors (6xxx)
    RELIABILITY_RETRY_EXHAUSTED = 6001

    # Session errors (7xxx)
    SESSION_NOT_LOADED = 7001
    SESSION_ALREADY_LOADED = 7002
    SESSION_INVALID_TRANSITION = 7003


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class ReliaStoreError(Exception):
    """
    Base class for all reliastore errors.

    ``error_id`` ties a returned error to the log lines that mention it;
    ``context`` holds the key, identity or versions involved.
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# BACKEND ERRORS
# =============================================================================
@dataclass
class BackendError(ReliaStoreError):
    """
    Errors from the key-value backend.

    All backend errors are considered transient and are retried by the
    reliability layer before being surfaced.
    """

    @classmethod
    def unavailable(
        cls,
        operation: str,
        key: str,
        cause: Optional[Exception] = None,
    ) -> BackendError:
        """Backend could not be reached."""
        return cls(
            code=ErrorCode.BACKEND_UNAVAILABLE,
            message=f"Backend unavailable during {operation} of '{key}'",
            cause=cause,
            context={"operation": operation, "key": key},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        key: str,
        cause: Optional[Exception] = None,
    ) -> BackendError:
        """Backend round-trip timed out."""
        return cls(
            code=ErrorCode.BACKEND_TIMEOUT,
            message=f"Backend {operation} of '{key}' timed out",
            cause=cause,
            context={"operation": operation, "key": key},
        )

    @classmethod
    def corrupt_payload(
        cls,
        key: str,
        cause: Optional[Exception] = None,
    ) -> BackendError:
        """Stored blob could not be decoded."""
        return cls(
            code=ErrorCode.BACKEND_CORRUPT_PAYLOAD,
            message=f"Stored value for '{key}' is not valid JSON",
            cause=cause,
            context={"key": key},
        )

    @classmethod
    def transaction_aborted(
        cls,
        key: str,
        attempts: int,
    ) -> BackendError:
        """Optimistic transaction kept losing the race."""
        return cls(
            code=ErrorCode.BACKEND_TRANSACTION_ABORTED,
            message=f"Conditional update of '{key}' aborted after {attempts} attempts",
            context={"key": key, "attempts": attempts},
        )


# =============================================================================
# LEASE ERRORS
# =============================================================================
@dataclass
class LeaseError(ReliaStoreError):
    """
    Errors from the lease lock manager.

    Contention is a legitimate state, not a fault: it is never retried
    automatically.
    """

    @classmethod
    def held_by_other(
        cls,
        key: str,
        owner: Optional[str] = None,
    ) -> LeaseError:
        """Lease is held by another live owner."""
        return cls(
            code=ErrorCode.LEASE_HELD_BY_OTHER,
            message=f"Lease for '{key}' is held by another process",
            context={"key": key, "owner": owner},
        )


# =============================================================================
# CONFLICT ERRORS
# =============================================================================
@dataclass
class ConflictError(ReliaStoreError):
    """A newer write already landed in the backend."""

    @classmethod
    def version_regression(
        cls,
        key: str,
        stored_version: int,
        attempted_version: int,
    ) -> ConflictError:
        return cls(
            code=ErrorCode.CONFLICT_VERSION_REGRESSION,
            message=(
                f"Backend holds version {stored_version} for '{key}', "
                f"refusing to write version {attempted_version}"
            ),
            context={
                "key": key,
                "stored_version": stored_version,
                "attempted_version": attempted_version,
            },
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================
@dataclass
class ValidationError(ReliaStoreError):
    """
    Record or value failed structural validation.

    Advisory when loading, blocking on explicit writes.
    """

    @classmethod
    def missing_field(cls, path: str) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_MISSING_FIELD,
            message=f"Missing required field: {path}",
            context={"path": path},
        )

    @classmethod
    def type_mismatch(
        cls,
        path: str,
        expected: str,
        actual: str,
    ) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_TYPE_MISMATCH,
            message=f"Type mismatch for {path}: expected {expected}, got {actual}",
            context={"path": path, "expected": expected, "actual": actual},
        )

    @classmethod
    def rejected_by_validator(
        cls,
        path: str,
        value: Any,
        reason: str = "",
    ) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_REJECTED,
            message=f"Validation failed for {path}: {reason or str(value)[:100]}",
            context={"path": path, "value": str(value)[:100], "reason": reason},
        )

    @classmethod
    def invalid_json(
        cls,
        reason: str,
        cause: Optional[Exception] = None,
    ) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_INVALID_JSON,
            message=f"Invalid record JSON: {reason}",
            cause=cause,
            context={"reason": reason},
        )

    @property
    def path(self) -> Optional[str]:
        return self.context.get("path")


# =============================================================================
# MIGRATION ERRORS
# =============================================================================
@dataclass
class MigrationError(ReliaStoreError):
    """A single migration failed; the load carries on without it."""

    @classmethod
    def transform_failed(
        cls,
        version: int,
        cause: Exception,
    ) -> MigrationError:
        return cls(
            code=ErrorCode.MIGRATION_TRANSFORM_FAILED,
            message=f"Migration {version} failed: {cause}",
            cause=cause,
            context={"version": version},
        )

    @classmethod
    def invalid_result(
        cls,
        version: int,
        result_type: str,
    ) -> MigrationError:
        return cls(
            code=ErrorCode.MIGRATION_INVALID_RESULT,
            message=f"Migration {version} returned {result_type}, expected a mapping",
            context={"version": version, "result_type": result_type},
        )

    @property
    def version(self) -> int:
        return self.context["version"]


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(ReliaStoreError):
    """Errors from the retry layer."""

    @classmethod
    def retry_exhausted(
        cls,
        operation: str,
        attempts: int,
        last_error: str,
        cause: Optional[Exception] = None,
    ) -> ReliabilityError:
        """All retry attempts exhausted."""
        return cls(
            code=ErrorCode.RELIABILITY_RETRY_EXHAUSTED,
            message=f"{operation} failed after {attempts} attempts: {last_error}",
            cause=cause,
            context={
                "operation": operation,
                "attempts": attempts,
                "last_error": last_error,
            },
        )


# =============================================================================
# SESSION ERRORS
# =============================================================================
@dataclass
class SessionError(ReliaStoreError):
    """Caller addressed a session in the wrong lifecycle state."""

    @classmethod
    def not_loaded(cls, identity: Any) -> SessionError:
        return cls(
            code=ErrorCode.SESSION_NOT_LOADED,
            message=f"No active session for {identity!r}",
            context={"identity": str(identity)},
        )

    @classmethod
    def already_loaded(cls, identity: Any) -> SessionError:
        return cls(
            code=ErrorCode.SESSION_ALREADY_LOADED,
            message=f"Session for {identity!r} is already loaded or loading",
            context={"identity": str(identity)},
        )

    @classmethod
    def invalid_transition(
        cls,
        identity: Any,
        state: str,
        trigger: str,
    ) -> SessionError:
        return cls(
            code=ErrorCode.SESSION_INVALID_TRANSITION,
            message=f"No valid transition from {state} with trigger '{trigger}'",
            context={"identity": str(identity), "state": state, "trigger": trigger},
        )
