"""
System-Wide Constants for reliastore

All magic numbers, reserved record fields and configuration defaults
centralized here.
"""

from typing import Final

# =============================================================================
# RESERVED RECORD FIELDS
# =============================================================================
VERSION_FIELD: Final[str] = "version"
SCHEMA_VERSION_FIELD: Final[str] = "schemaVersion"
CREATED_AT_FIELD: Final[str] = "createdAt"

# Persisted compressed wrapper: {"compressed": true, "codec": ..., "payload": ...}
COMPRESSED_FLAG: Final[str] = "compressed"
COMPRESSED_PAYLOAD: Final[str] = "payload"
COMPRESSED_CODEC: Final[str] = "codec"

# Dirty-set sentinel meaning "whole record replaced"
ROOT: Final[str] = "__root__"

PATH_SEPARATOR: Final[str] = "."

# =============================================================================
# LEASES
# =============================================================================
DEFAULT_LEASE_TTL_S: Final[float] = 120.0
MIN_LEASE_TTL_S: Final[float] = 1.0
# A lease is stale (stealable) once older than STALE_FACTOR x TTL
LEASE_STALE_FACTOR: Final[int] = 2

# =============================================================================
# LIFECYCLE
# =============================================================================
DEFAULT_AUTOSAVE_INTERVAL_S: Final[float] = 30.0
DEFAULT_SESSION_TIMEOUT_S: Final[float] = 600.0
DEFAULT_BACKUP_COUNT: Final[int] = 2

# =============================================================================
# RELIABILITY
# =============================================================================
DEFAULT_RETRIES: Final[int] = 3
DEFAULT_RETRY_BASE_DELAY_S: Final[float] = 0.5
# redis WATCH/MULTI attempts before an update is reported as aborted
MAX_TRANSACTION_ATTEMPTS: Final[int] = 16

# =============================================================================
# KEYS
# =============================================================================
DEFAULT_DATA_KEY_PREFIX: Final[str] = "u:"
DEFAULT_LOCK_KEY_PREFIX: Final[str] = "lock:"
ENV_PREFIX: Final[str] = "RELIASTORE"
