"""
reliastore: session-oriented record synchronization

Keeps a per-client mutable record consistent with a remote, latency-heavy,
eventually-consistent key-value backend while many server processes share
that backend:

- Lease Manager: single writer per record, stale-lease recovery
- Session Store: live records, dirty-path tracking, heartbeats
- Migration Engine: ordered, version-gated schema transforms
- Schema Validator: advisory on load, blocking on writes
- Persistence Engine: delta saves behind an optimistic version check,
  pluggable compression, bounded backups
- Lifecycle Scheduler: autosave, lease renewal, idle-session sweep
"""

__version__ = "2.0.0"

from reliastore.core.types import Result, Ok, Err, Identity, Record
from reliastore.core.errors import (
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

from reliastore.storage import (
    KeyValueBackend,
    InMemoryBackend,
    RedisBackend,
    RedisConfig,
    Compressor,
    NoCompression,
    Lz4Compressor,
    LzmaCompressor,
)
from reliastore.schema import Schema, FieldSpec, MigrationEngine
from reliastore.session import LeaseManager, SessionStore, SessionState
from reliastore.engine import (
    EventBus,
    EventKind,
    PersistenceEngine,
    LifecycleScheduler,
    SaveOutcome,
)
from reliastore.datastore import ReliableStore

__all__ = [
    "__version__",
    "Result",
    "Ok",
    "Err",
    "Identity",
    "Record",
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
    "KeyValueBackend",
    "InMemoryBackend",
    "RedisBackend",
    "RedisConfig",
    "Compressor",
    "NoCompression",
    "Lz4Compressor",
    "LzmaCompressor",
    "Schema",
    "FieldSpec",
    "MigrationEngine",
    "LeaseManager",
    "SessionStore",
    "SessionState",
    "EventBus",
    "EventKind",
    "PersistenceEngine",
    "LifecycleScheduler",
    "SaveOutcome",
    "ReliableStore",
]
