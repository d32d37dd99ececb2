"""
Persistence Engine: load and save pipelines

Load:
    1. acquire the record's lease (failure rejects the session and kicks
       the client)
    2. fetch the stored blob with bounded retry and linear backoff
    3. absent -> defaults at version 1; present -> unwrap compression,
       falling back to the raw blob when the payload does not decode
    4. deep-merge the defaults without overwriting existing keys
    5. bump the version
    6. run pending migrations
    7. validate against the schema (advisory)
    8. register the session
    9. emit ``loaded`` with a copy of the record

Save:
    1. snapshot the record and its edit-counter version, detach dirty set
    2. nothing dirty -> refresh ``last_save`` and emit ``saved``; the
       backend is only touched for a forced write
    3. conditional update: unwrap the stored value, compare versions,
       rebuild from dirty paths (or replace wholesale on ROOT), stamp the
       version, compress
    4. success -> backup ring, ``last_save``, ``saved`` event
    5. retries exhausted -> dirty paths restored for the next attempt
    6. release requested -> session closed and lease released whatever
       the outcome

Consistency model:
    The stored ``version`` is the only serialization point between
    processes. A save with dirty paths commits only when the stored
    version is strictly lower than the snapshot version. Within one
    process a per-session lock keeps saves of the same record from
    interleaving; ``get``/``set`` never wait on it. Dirty paths are
    re-applied onto whatever the backend holds, so concurrent edits to
    different paths merge without a conflict (last writer per path wins).
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from reliastore.core import constants as C
from reliastore.core.clock import Clock, SystemClock
from reliastore.core.config import StoreSettings
from reliastore.core.errors import (
    ConflictError,
    LeaseError,
    ReliaStoreError,
    SessionError,
)
from reliastore.core.paths import deep_copy, deep_get, deep_merge, deep_set
from reliastore.core.types import Identity, Record, Result, Ok, Err
from reliastore.engine.events import (
    ConflictEvent,
    EventBus,
    LoadedEvent,
    RejectedEvent,
    SavedEvent,
)
from reliastore.observability.logging import StructuredLogger
from reliastore.observability.metrics import EngineMetrics
from reliastore.reliability.retry import RetryPolicy, retry_with_backoff
from reliastore.schema.migrations import MigrationEngine
from reliastore.schema.validator import Schema, validate
from reliastore.session.lease import LeaseManager
from reliastore.session.state_machine import SessionStateMachine
from reliastore.session.store import Session, SessionMeta, SessionStore
from reliastore.storage.codec import BlobCodec, Compressor
from reliastore.storage.protocols import KeyValueBackend

logger = StructuredLogger(__name__)

# kick(identity, reason); may be a coroutine function
Kick = Callable[[Identity, str], Any]

REJECT_REASON = "Data in use, try again."
EVICT_REASON = "Session lease taken over by another server."


class SaveOutcome(Enum):
    WRITTEN = "written"      # backend conditionally updated
    UNCHANGED = "unchanged"  # nothing dirty, backend untouched


def stored_version(record: Mapping[str, Any]) -> int:
    value = record.get(C.VERSION_FIELD, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def apply_deltas(stored: Record, snapshot: Record, dirty: set[str]) -> Record:
    """
    Rebuild the value to write from the stored record.

    ``ROOT`` replaces wholesale; otherwise each dirty path's snapshot
    value is copied onto a deep copy of ``stored`` and every other field
    is kept verbatim.
    """
    if C.ROOT in dirty:
        return deep_copy(snapshot)
    patched = deep_copy(stored)
    for path in collapse_paths(dirty):
        deep_set(patched, path, deep_copy(deep_get(snapshot, path)))
    return patched


def collapse_paths(dirty: set[str]) -> list[str]:
    """Drop every path whose ancestor is also dirty; the ancestor carries it."""
    kept: list[str] = []
    for path in sorted(dirty):
        if any(path.startswith(parent + C.PATH_SEPARATOR) for parent in kept):
            continue
        kept.append(path)
    return kept


class PersistenceEngine:
    """
    Moves records between the backend and the session table.

    Usage:
        engine = PersistenceEngine("players", backend, SessionStore(), leases,
                                   defaults={"Coins": 0})
        loaded = await engine.load(42)
        engine.sessions.set(42, "Coins", 100)
        saved = await engine.save(42, release=True)
    """

    __slots__ = (
        "_name", "_backend", "_sessions", "_leases", "_migrations",
        "_settings", "_defaults", "_schema", "_codec", "_events",
        "_clock", "_metrics", "_kick", "_retry_policy", "_loading",
        "_releasing", "_log",
    )

    def __init__(
        self,
        name: str,
        backend: KeyValueBackend,
        sessions: SessionStore,
        leases: LeaseManager,
        migrations: Optional[MigrationEngine] = None,
        settings: Optional[StoreSettings] = None,
        defaults: Optional[Mapping[str, Any]] = None,
        schema: Optional[Schema] = None,
        compressor: Optional[Compressor] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[EngineMetrics] = None,
        kick: Optional[Kick] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._name = name
        self._backend = backend
        self._sessions = sessions
        self._leases = leases
        self._migrations = migrations if migrations is not None else MigrationEngine()
        self._settings = settings or StoreSettings()
        self._defaults: Record = deep_copy(dict(defaults or {}))
        self._schema = schema
        self._codec = BlobCodec(compressor)
        self._events = events or EventBus()
        self._clock = clock or SystemClock()
        self._metrics = metrics or EngineMetrics(name)
        self._kick = kick
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=self._settings.retries,
            base_delay_s=self._settings.retry_base_delay_s,
        )
        self._loading: set[Identity] = set()
        self._releasing: dict[Identity, asyncio.Event] = {}
        self._log = logger.with_extra(store=name)

    # -------------------------------------------------------------------------
    # ACCESSORS
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def leases(self) -> LeaseManager:
        return self._leases

    @property
    def migrations(self) -> MigrationEngine:
        return self._migrations

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def settings(self) -> StoreSettings:
        return self._settings

    @property
    def metrics(self) -> EngineMetrics:
        return self._metrics

    @property
    def clock(self) -> Clock:
        return self._clock

    def data_key(self, identity: Identity) -> str:
        return f"{self._settings.data_key_prefix}{self._name}:{identity}"

    def lease_key(self, identity: Identity) -> str:
        return f"{self._settings.lock_key_prefix}{self._name}:{identity}"

    def is_loaded(self, identity: Identity) -> bool:
        return identity in self._sessions

    def backups(self, identity: Identity) -> list[Record]:
        """Saved snapshots, newest first."""
        session = self._sessions.lookup(identity)
        if session is None:
            return []
        return [deep_copy(b) for b in session.backups]

    # -------------------------------------------------------------------------
    # LOAD
    # -------------------------------------------------------------------------

    async def load(self, identity: Identity) -> Result[Record, ReliaStoreError]:
        """
        Open a session for ``identity``.

        Returns:
            Ok(copy of the loaded record)
            Err(LeaseError) when another live process owns the record
            Err(ReliabilityError) when the lease or record stayed unreadable
            Err(SessionError) when the identity is already loaded here

        A load arriving while the same identity is being released waits
        for the lease release to finish first.
        """
        releasing = self._releasing.get(identity)
        if releasing is not None:
            await releasing.wait()
        if identity in self._sessions or identity in self._loading:
            return Err(SessionError.already_loaded(identity))
        self._loading.add(identity)
        try:
            with StructuredLogger.context(identity=str(identity)):
                return await self._load(identity)
        finally:
            self._loading.discard(identity)

    async def _load(self, identity: Identity) -> Result[Record, ReliaStoreError]:
        lifecycle = SessionStateMachine(identity)
        self._advance(lifecycle, "LOAD")
        lease_key = self.lease_key(identity)

        acquired = await self._leases.try_acquire(lease_key)
        if acquired.is_err() or not acquired.unwrap():
            self._advance(lifecycle, "REJECTED")
            await self._reject(identity, REJECT_REASON)
            if acquired.is_err():
                return acquired
            return Err(LeaseError.held_by_other(lease_key))

        data_key = self.data_key(identity)
        fetched = await retry_with_backoff(
            lambda: self._backend.get(data_key),
            self._retry_policy,
            operation=f"fetch {data_key}",
        )
        if fetched.is_err():
            self._log.error("Fetch failed, releasing lease", error=str(fetched.error))
            self._advance(lifecycle, "FETCH_FAILED")
            await self._leases.release(lease_key)
            return fetched

        record = self._materialize(fetched.unwrap())

        report = self._migrations.apply(record)
        record = report.record
        for _ in report.failures:
            self._metrics.migration_failures.inc(store=self._name)

        verdict = validate(self._schema, record)
        if verdict.is_err():
            self._log.warning("Schema validation failed on load", error=str(verdict.error))

        now = self._clock.time()
        created_at = record.get(C.CREATED_AT_FIELD)
        session = Session(
            identity=identity,
            key=data_key,
            lease_key=lease_key,
            data=record,
            version=stored_version(record),
            meta=SessionMeta(
                created_at=created_at if isinstance(created_at, (int, float)) else now,
                last_loaded=now,
            ),
            backup_count=self._settings.backup_count,
            lifecycle=lifecycle,
        )
        if report.applied:
            session.mark_dirty(None)

        opened = await self._sessions.open(identity, session)
        if opened.is_err():
            return opened
        self._advance(lifecycle, "LOADED")

        self._metrics.loads.inc(store=self._name)
        self._metrics.active_sessions.set(len(self._sessions), store=self._name)
        self._log.info(
            "Loaded record",
            version=session.version,
            migrations=report.applied,
        )
        self._events.emit(LoadedEvent(identity, deep_copy(record)))
        return Ok(deep_copy(record))

    def _materialize(self, raw: Any) -> Record:
        """Steps 3-5: turn the stored blob into the in-memory record."""
        if raw is None:
            record = deep_copy(self._defaults)
            record[C.VERSION_FIELD] = 1
            record.setdefault(C.SCHEMA_VERSION_FIELD, 0)
            return record

        data = self._codec.unwrap(raw)
        if not isinstance(data, dict):
            self._log.warning("Stored value is not a record, using defaults")
            data = deep_copy(self._defaults)
        deep_merge(data, self._defaults)
        data[C.VERSION_FIELD] = stored_version(data) + 1
        return data

    def _advance(self, lifecycle: SessionStateMachine, trigger: str) -> None:
        moved = lifecycle.transition(trigger)
        if moved.is_err():
            self._log.warning(
                "Ignoring invalid session transition",
                trigger=trigger,
                state=lifecycle.state.name,
                error=str(moved.error),
            )

    async def _reject(self, identity: Identity, reason: str) -> None:
        self._log.warning("Rejecting session", reason=reason)
        self._metrics.rejections.inc(store=self._name)
        self._events.emit(RejectedEvent(identity, reason))
        if self._kick is None:
            return
        try:
            outcome = self._kick(identity, reason)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._log.exception("Kick callback failed")

    # -------------------------------------------------------------------------
    # SAVE
    # -------------------------------------------------------------------------

    async def save(
        self,
        identity: Identity,
        release: bool = False,
        force_write: Optional[bool] = None,
    ) -> Result[SaveOutcome, ReliaStoreError]:
        """
        Persist the dirty paths of ``identity``'s session.

        Args:
            identity: Loaded identity
            release: Close the session and release the lease afterwards,
                whatever the outcome
            force_write: Touch the backend even when nothing is dirty
                (defaults to ``settings.force_empty_writes``)

        Returns:
            Ok(SaveOutcome)
            Err(ConflictError) when a newer version is already stored
            Err(ReliabilityError) when the backend stayed unreachable
            Err(SessionError) when the identity is not loaded
        """
        session = self._sessions.lookup(identity)
        if session is None:
            return Err(SessionError.not_loaded(identity))

        async with session.save_lock:
            if self._sessions.lookup(identity) is not session:
                return Err(SessionError.not_loaded(identity))
            with StructuredLogger.context(identity=str(identity)):
                self._advance(session.lifecycle, "SAVE")
                try:
                    with self._metrics.save_latency.time(store=self._name):
                        result = await self._save(session, force_write)
                finally:
                    if release:
                        self._advance(session.lifecycle, "RELEASE")
                        await self._close(session)
                    else:
                        self._advance(session.lifecycle, "SAVE_DONE")
        return result

    async def _save(
        self,
        session: Session,
        force_write: Optional[bool],
    ) -> Result[SaveOutcome, ReliaStoreError]:
        snapshot_version = session.version
        snapshot = deep_copy(session.data)
        snapshot[C.VERSION_FIELD] = snapshot_version
        dirty = session.take_dirty()
        force = self._settings.force_empty_writes if force_write is None else force_write

        if not dirty and not force:
            session.meta.last_save = self._clock.time()
            self._metrics.saves.inc(store=self._name, outcome=SaveOutcome.UNCHANGED.value)
            self._events.emit(SavedEvent(session.identity, snapshot))
            return Ok(SaveOutcome.UNCHANGED)

        # Decided inside the transform, acted on after the update returns.
        conflict: list[Record] = []

        def transform(current: Any) -> Any:
            conflict.clear()
            stored = self._codec.unwrap(current) if current is not None else {}
            if not isinstance(stored, dict):
                stored = {}
            version = stored_version(stored)
            if dirty:
                if version >= snapshot_version:
                    conflict.append(stored)
                    return None
                to_write = apply_deltas(stored, snapshot, dirty)
                to_write[C.VERSION_FIELD] = snapshot_version
            else:
                if version > snapshot_version:
                    conflict.append(stored)
                    return None
                if current is None:
                    return None
                to_write = stored
            return self._codec.wrap(to_write)

        result = await retry_with_backoff(
            lambda: self._backend.update(session.key, transform),
            self._retry_policy,
            operation=f"save {session.key}",
        )

        if result.is_err():
            session.restore_dirty(dirty)
            # A write that landed before the failure was reported must not
            # read as a conflict on the next attempt.
            session.version = max(session.version, snapshot_version + 1)
            self._metrics.save_failures.inc(store=self._name)
            self._log.error(
                "Save failed, changes kept for the next save",
                error=str(result.error),
                dirty_paths=sorted(dirty),
            )
            return result

        if conflict:
            backend_record = conflict[0]
            backend_version = stored_version(backend_record)
            self._metrics.conflicts.inc(store=self._name)
            self._log.warning(
                "Conflict: store has newer version",
                stored_version=backend_version,
                attempted_version=snapshot_version,
            )
            self._events.emit(ConflictEvent(
                session.identity, deep_copy(backend_record), snapshot,
            ))
            return Err(ConflictError.version_regression(
                session.key, backend_version, snapshot_version,
            ))

        outcome = SaveOutcome.WRITTEN if dirty else SaveOutcome.UNCHANGED
        if dirty:
            session.push_backup(deep_copy(snapshot))
            session.data[C.VERSION_FIELD] = snapshot_version
        session.meta.last_save = self._clock.time()
        self._metrics.saves.inc(store=self._name, outcome=outcome.value)
        self._log.debug("Saved record", version=snapshot_version, dirty_paths=sorted(dirty))
        self._events.emit(SavedEvent(session.identity, snapshot))
        return Ok(outcome)

    async def save_all(self, release: bool = True) -> dict[Identity, Result[SaveOutcome, ReliaStoreError]]:
        """Save every active session concurrently."""
        identities = [identity for identity, _ in self._sessions.snapshot()]
        results = await asyncio.gather(
            *(self.save(identity, release=release) for identity in identities)
        )
        return dict(zip(identities, results))

    # -------------------------------------------------------------------------
    # RELEASE / EVICT
    # -------------------------------------------------------------------------

    async def _close(self, session: Session) -> None:
        """Remove the session, then give up its lease."""
        released = asyncio.Event()
        self._releasing[session.identity] = released
        try:
            await self._sessions.close(session.identity)
            await self._leases.release(session.lease_key)
        finally:
            del self._releasing[session.identity]
            released.set()
        self._metrics.active_sessions.set(len(self._sessions), store=self._name)
        self._log.info("Released session")

    async def evict(self, identity: Identity, reason: str = EVICT_REASON) -> bool:
        """
        Drop a session whose lease now belongs to someone else, without
        writing. Waits for an in-flight save of the same session.
        """
        session = self._sessions.lookup(identity)
        if session is None:
            return False
        async with session.save_lock:
            if self._sessions.lookup(identity) is not session:
                return False
            with StructuredLogger.context(identity=str(identity)):
                self._advance(session.lifecycle, "EVICT")
                await self._sessions.close(identity)
                self._metrics.active_sessions.set(len(self._sessions), store=self._name)
                await self._reject(identity, reason)
        return True
