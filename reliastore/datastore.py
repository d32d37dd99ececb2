"""
ReliableStore: the public facade

Wires the lease manager, session table, migration engine, persistence
engine, event bus and lifecycle scheduler for one named store.

    store = ReliableStore("players", {"Coins": 0}, backend=InMemoryBackend())
    store.on(EventKind.SAVED, lambda e: print("saved", e.identity))
    await store.start()

    await store.client_connected(42)       # load, or reject and kick
    store.set(42, "Coins", 100)
    await store.client_disconnected(42)    # save and release

    await store.shutting_down()            # flush everything

Record keys are ``data_key_prefix + name + ":" + identity``; lease keys are
``lock_key_prefix + name + ":" + identity``. Record and lease storage may
share one backend or use two.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Union

from reliastore.core.clock import Clock, SystemClock
from reliastore.core.config import StoreSettings
from reliastore.core.errors import ReliaStoreError
from reliastore.core.types import Identity, Record, Result
from reliastore.engine.events import EventBus, EventKind, Listener
from reliastore.engine.lifecycle import LifecycleScheduler
from reliastore.engine.persistence import Kick, PersistenceEngine, SaveOutcome
from reliastore.observability.metrics import EngineMetrics, MetricsCollector
from reliastore.reliability.retry import RetryPolicy
from reliastore.schema.migrations import Migration, MigrationEngine, TransformFn
from reliastore.schema.validator import Schema
from reliastore.session.lease import LeaseManager
from reliastore.session.store import SessionStore, Validator
from reliastore.storage.codec import Compressor, Lz4Compressor
from reliastore.storage.protocols import KeyValueBackend

SaveResult = Result[SaveOutcome, ReliaStoreError]


class ReliableStore:
    """
    Session-oriented store keeping per-client records consistent with an
    eventually-consistent key-value backend.
    """

    __slots__ = (
        "_name", "_settings", "_clock", "_events", "_sessions",
        "_leases", "_migrations", "_metrics", "_engine", "_scheduler",
    )

    def __init__(
        self,
        name: str,
        defaults: Optional[Mapping[str, Any]],
        backend: KeyValueBackend,
        settings: Optional[StoreSettings] = None,
        schema: Union[Schema, Mapping[str, Any], None] = None,
        compressor: Optional[Compressor] = None,
        lease_backend: Optional[KeyValueBackend] = None,
        clock: Optional[Clock] = None,
        owner_id: Optional[str] = None,
        kick: Optional[Kick] = None,
        collector: Optional[MetricsCollector] = None,
    ) -> None:
        settings = settings or StoreSettings()
        checked = settings.validate()
        if checked.is_err():
            raise ValueError(checked.error)
        if schema is not None and not isinstance(schema, Schema):
            schema = Schema.from_dict(schema)
        if compressor is None and settings.compress:
            compressor = Lz4Compressor()

        self._name = name
        self._settings = settings
        self._clock = clock or SystemClock()
        self._events = EventBus()
        self._metrics = EngineMetrics(name, collector)
        self._sessions = SessionStore(clock=self._clock, schema=schema)
        self._migrations = MigrationEngine()
        retry_policy = RetryPolicy(
            max_attempts=settings.retries,
            base_delay_s=settings.retry_base_delay_s,
        )
        self._leases = LeaseManager(
            lease_backend if lease_backend is not None else backend,
            owner_id=owner_id,
            ttl_s=settings.lease_ttl_s,
            retry_policy=retry_policy,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._engine = PersistenceEngine(
            name,
            backend,
            self._sessions,
            self._leases,
            migrations=self._migrations,
            settings=settings,
            defaults=defaults,
            schema=schema,
            compressor=compressor,
            events=self._events,
            clock=self._clock,
            metrics=self._metrics,
            kick=kick,
            retry_policy=retry_policy,
        )
        self._scheduler = LifecycleScheduler(self._engine, settings, self._clock)

    # -------------------------------------------------------------------------
    # PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def owner_id(self) -> str:
        return self._leases.owner_id

    @property
    def settings(self) -> StoreSettings:
        return self._settings

    @property
    def engine(self) -> PersistenceEngine:
        return self._engine

    @property
    def scheduler(self) -> LifecycleScheduler:
        return self._scheduler

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def metrics(self) -> EngineMetrics:
        return self._metrics

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self._scheduler.start()

    async def stop(self) -> None:
        await self._scheduler.stop()

    async def shutdown(self) -> dict[Identity, SaveResult]:
        results = await self._scheduler.shutdown()
        await self._events.drain()
        return results

    async def client_connected(self, identity: Identity) -> Result[Record, ReliaStoreError]:
        return await self._scheduler.client_connected(identity)

    async def client_disconnected(self, identity: Identity) -> SaveResult:
        return await self._scheduler.client_disconnected(identity)

    async def shutting_down(self) -> dict[Identity, SaveResult]:
        return await self.shutdown()

    # -------------------------------------------------------------------------
    # REGISTRIES
    # -------------------------------------------------------------------------

    def on(self, kind: Union[EventKind, str], listener: Listener) -> Callable[[], None]:
        """Subscribe to ``loaded``/``saved``/``rejected``/``conflict``."""
        return self._events.on(kind, listener)

    def set_validator(self, path: str, validator: Optional[Validator]) -> None:
        self._sessions.set_validator(path, validator)

    def register_migration(
        self,
        version: int,
        transform: Union[TransformFn, Migration],
    ) -> None:
        self._migrations.register(version, transform)

    # -------------------------------------------------------------------------
    # RECORD ACCESS
    # -------------------------------------------------------------------------

    async def load(self, identity: Identity) -> Result[Record, ReliaStoreError]:
        return await self._engine.load(identity)

    def is_loaded(self, identity: Identity) -> bool:
        return self._engine.is_loaded(identity)

    def get(self, identity: Identity, path: Optional[str] = None) -> Any:
        """Value at ``path`` (whole record when omitted); ``None`` if not loaded."""
        return self._sessions.get(identity, path).unwrap_or(None)

    def set(self, identity: Identity, path: Optional[str], value: Any) -> bool:
        """``True`` when the write was accepted and marked dirty."""
        return self._sessions.set(identity, path, value).is_ok()

    def export_json(self, identity: Identity) -> Optional[str]:
        return self._sessions.export_json(identity).unwrap_or(None)

    def import_json(self, identity: Identity, text: Union[str, bytes]) -> bool:
        return self._sessions.import_json(identity, text).is_ok()

    async def save(
        self,
        identity: Identity,
        release: bool = False,
        force_write: Optional[bool] = None,
    ) -> SaveResult:
        return await self._engine.save(identity, release=release, force_write=force_write)

    async def save_all(self, release: bool = True) -> dict[Identity, SaveResult]:
        return await self._engine.save_all(release=release)

    def backups(self, identity: Identity) -> list[Record]:
        return self._engine.backups(identity)
