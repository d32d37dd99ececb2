"""
Session Store: in-memory table of live records

Each connected identity owns one ``Session``: the mutable record, the
dirty paths accumulated since the last successful save, a bounded ring
of saved snapshots and timing metadata.

Concurrency model:
    - The table itself (open/close) is guarded by one ``asyncio.Lock``.
    - ``get``/``set`` are synchronous and lock-free: the lease guarantees
      this process is the only writer of the record.
    - Saves swap the dirty set out with ``take_dirty`` so mutations made
      while a save is in flight land in a fresh set for the next cycle.
    - ``snapshot`` returns a list copy, so loops can iterate while
      sessions are being removed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from reliastore.core import constants as C
from reliastore.core.clock import Clock, SystemClock
from reliastore.core.errors import ReliaStoreError, SessionError, ValidationError
from reliastore.core.paths import deep_copy, deep_get, deep_set
from reliastore.core.types import Identity, Record, Result, Ok, Err
from reliastore.schema.validator import Schema, validate, type_name
from reliastore.session.state_machine import SessionState, SessionStateMachine

logger = logging.getLogger(__name__)

# validator(value) -> truthy to accept
Validator = Callable[[Any], Any]


@dataclass
class SessionMeta:
    """Timing metadata. Wall-clock seconds except ``last_heartbeat``."""
    created_at: float
    last_loaded: float
    last_save: float = 0.0
    last_heartbeat: float = 0.0  # monotonic


@dataclass(eq=False)
class Session:
    """
    Live in-process representation of one record.

    ``version`` is the edit counter: seeded from the stored version plus
    one on load, bumped by every successful write, and stamped onto the
    record when it is saved.
    """
    identity: Identity
    key: str
    lease_key: str
    data: Record
    version: int
    meta: SessionMeta
    backup_count: int = C.DEFAULT_BACKUP_COUNT
    dirty: set[str] = field(default_factory=set)
    backups: deque = field(init=False)
    lifecycle: Optional[SessionStateMachine] = None
    save_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        self.backups = deque(maxlen=max(0, self.backup_count))
        if self.lifecycle is None:
            self.lifecycle = SessionStateMachine(self.identity, SessionState.ACTIVE)

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    @property
    def is_dirty(self) -> bool:
        return bool(self.dirty)

    def mark_dirty(self, path: Optional[str]) -> None:
        self.dirty.add(path or C.ROOT)

    def take_dirty(self) -> set[str]:
        """Detach the current dirty set, leaving a fresh one in place."""
        taken, self.dirty = self.dirty, set()
        return taken

    def restore_dirty(self, paths: set[str]) -> None:
        """Put back paths whose save did not commit."""
        self.dirty |= paths

    def push_backup(self, snapshot: Record) -> None:
        """Newest first; the oldest falls off beyond ``backup_count``."""
        if self.backups.maxlen:
            self.backups.appendleft(snapshot)

    def touch(self, now: float) -> None:
        self.meta.last_heartbeat = now


class SessionStore:
    """
    Owned map of identity -> Session with path-level accessors.

    Example:
        store = SessionStore()
        await store.open(42, session)
        store.set(42, "Inventory.Sword", 1)
        store.get(42, "Inventory")   # Ok({"Sword": 1})
    """

    __slots__ = ("_sessions", "_lock", "_validators", "_schema", "_clock")

    def __init__(
        self,
        clock: Optional[Clock] = None,
        schema: Optional[Schema] = None,
    ) -> None:
        self._sessions: dict[Identity, Session] = {}
        self._lock = asyncio.Lock()
        self._validators: dict[str, Validator] = {}
        self._schema = schema
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # TABLE
    # -------------------------------------------------------------------------

    async def open(self, identity: Identity, session: Session) -> Result[None, SessionError]:
        async with self._lock:
            if identity in self._sessions:
                return Err(SessionError.already_loaded(identity))
            session.touch(self._clock.monotonic())
            self._sessions[identity] = session
        return Ok(None)

    async def close(self, identity: Identity) -> Optional[Session]:
        async with self._lock:
            return self._sessions.pop(identity, None)

    def lookup(self, identity: Identity) -> Optional[Session]:
        return self._sessions.get(identity)

    def snapshot(self) -> list[tuple[Identity, Session]]:
        """Point-in-time list of sessions, safe against concurrent removal."""
        return list(self._sessions.items())

    def identities(self) -> list[Identity]:
        return list(self._sessions)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.identities())

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    def set_validator(self, path: str, validator: Optional[Validator]) -> None:
        """Register (or with ``None`` remove) the validator for ``path``."""
        if validator is None:
            self._validators.pop(path, None)
        else:
            self._validators[path] = validator

    @property
    def schema(self) -> Optional[Schema]:
        return self._schema

    def _check_validator(self, path: Optional[str], value: Any) -> Result[None, ValidationError]:
        if not path or path not in self._validators:
            return Ok(None)
        try:
            accepted = self._validators[path](value)
        except Exception as e:
            logger.warning("Validator for %s raised: %s", path, e)
            return Err(ValidationError.rejected_by_validator(path, value, str(e)))
        if not accepted:
            logger.warning("Validation failed for %s: %r", path, value)
            return Err(ValidationError.rejected_by_validator(path, value))
        return Ok(None)

    # -------------------------------------------------------------------------
    # ACCESS
    # -------------------------------------------------------------------------

    def get(self, identity: Identity, path: Optional[str] = None) -> Result[Any, SessionError]:
        """
        Read the record or the value at ``path``.

        Returns a copy; changes must go through ``set`` to be tracked.
        """
        session = self._sessions.get(identity)
        if session is None:
            return Err(SessionError.not_loaded(identity))
        session.touch(self._clock.monotonic())
        return Ok(deep_copy(deep_get(session.data, path)))

    def set(
        self,
        identity: Identity,
        path: Optional[str],
        value: Any,
    ) -> Result[None, ReliaStoreError]:
        """
        Write ``value`` at ``path`` (or replace the whole record when
        ``path`` is empty) and mark it dirty.

        A rejecting validator or a schema violation leaves the record
        unchanged.
        """
        session = self._sessions.get(identity)
        if session is None:
            return Err(SessionError.not_loaded(identity))

        checked = self._check_validator(path, value)
        if checked.is_err():
            return checked

        value = deep_copy(value)
        if not path:
            if not isinstance(value, Mapping):
                return Err(ValidationError.type_mismatch("<root>", "table", type_name(value)))
            candidate: Record = dict(value)
        elif self._schema is not None:
            candidate = deep_copy(session.data)
            deep_set(candidate, path, value)
        else:
            candidate = session.data
            deep_set(candidate, path, value)

        if self._schema is not None:
            verdict = validate(self._schema, candidate)
            if verdict.is_err():
                logger.warning("Rejected write to %s: %s", path or "<root>", verdict.error)
                return verdict

        session.data = candidate
        session.mark_dirty(path)
        session.version += 1
        session.touch(self._clock.monotonic())
        return Ok(None)

    # -------------------------------------------------------------------------
    # IMPORT / EXPORT
    # -------------------------------------------------------------------------

    def export_json(self, identity: Identity) -> Result[str, SessionError]:
        session = self._sessions.get(identity)
        if session is None:
            return Err(SessionError.not_loaded(identity))
        return Ok(json.dumps(session.data))

    def import_json(
        self,
        identity: Identity,
        text: Union[str, bytes],
    ) -> Result[None, ReliaStoreError]:
        """Replace the whole record with the decoded document."""
        if identity not in self._sessions:
            return Err(SessionError.not_loaded(identity))
        try:
            decoded = json.loads(text)
        except (TypeError, ValueError) as e:
            return Err(ValidationError.invalid_json(str(e), cause=e))
        if not isinstance(decoded, dict):
            return Err(ValidationError.invalid_json(
                f"expected an object, got {type_name(decoded)}"
            ))
        return self.set(identity, None, decoded)
