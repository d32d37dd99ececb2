"""
Session State Machine: per-record lifecycle FSM

States:
    UNLOADED → No session; the initial and the rejected state
    LOADING  → Lease acquired or being acquired, record being fetched
    ACTIVE   → Session registered, reads and writes allowed
    SAVING   → A save is in flight; reads and writes stay allowed
    RELEASED → Lease released and session removed (terminal)

Transitions:
    UNLOADED → LOADING  : LOAD
    LOADING  → ACTIVE   : LOADED
    LOADING  → UNLOADED : REJECTED      (lease held by a live owner)
    LOADING  → UNLOADED : FETCH_FAILED  (record could not be read)
    ACTIVE   → SAVING   : SAVE
    SAVING   → ACTIVE   : SAVE_DONE     (written, unchanged, conflict or failed)
    SAVING   → RELEASED : RELEASE       (save requested with release)
    ACTIVE   → RELEASED : EVICT         (lease lost to another owner)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from reliastore.core.errors import SessionError
from reliastore.core.types import Identity, Result, Ok, Err

logger = logging.getLogger(__name__)


class SessionState(Enum):
    UNLOADED = auto()
    LOADING = auto()
    ACTIVE = auto()
    SAVING = auto()
    RELEASED = auto()

    @property
    def is_terminal(self) -> bool:
        return self == SessionState.RELEASED


@dataclass(frozen=True, slots=True)
class SessionTransition:
    from_state: SessionState
    to_state: SessionState
    trigger: str


VALID_TRANSITIONS: frozenset[SessionTransition] = frozenset({
    SessionTransition(SessionState.UNLOADED, SessionState.LOADING, "LOAD"),
    SessionTransition(SessionState.LOADING, SessionState.ACTIVE, "LOADED"),
    SessionTransition(SessionState.LOADING, SessionState.UNLOADED, "REJECTED"),
    SessionTransition(SessionState.LOADING, SessionState.UNLOADED, "FETCH_FAILED"),
    SessionTransition(SessionState.ACTIVE, SessionState.SAVING, "SAVE"),
    SessionTransition(SessionState.SAVING, SessionState.ACTIVE, "SAVE_DONE"),
    SessionTransition(SessionState.SAVING, SessionState.RELEASED, "RELEASE"),
    SessionTransition(SessionState.ACTIVE, SessionState.RELEASED, "EVICT"),
})


class TransitionGuard:
    """
    Guard condition for state transitions.

    Guards are evaluated before the transition executes; all must pass.
    """

    __slots__ = ("_name", "_predicate", "_error_message")

    def __init__(
        self,
        name: str,
        predicate: Callable[[SessionState], bool],
        error_message: str,
    ) -> None:
        self._name = name
        self._predicate = predicate
        self._error_message = error_message

    def evaluate(self, state: SessionState) -> Result[None, str]:
        if self._predicate(state):
            return Ok(None)
        return Err(f"Guard '{self._name}' failed: {self._error_message}")

    @property
    def name(self) -> str:
        return self._name


@dataclass(frozen=True, slots=True)
class StateTransitionEvent:
    """Emitted to listeners after every successful transition."""
    identity: Identity
    from_state: SessionState
    to_state: SessionState
    trigger: str
    at: float


class SessionStateMachine:
    """
    Lifecycle of one record inside this process.

    Usage:
        fsm = SessionStateMachine(identity)
        fsm.transition("LOAD")
        ...
        result = fsm.transition("LOADED")
        if result.is_err():
            log(result.error)

    Thread Safety:
        Single event loop only. Cross-process exclusivity comes from the
        lease, not from this machine.
    """

    __slots__ = ("_identity", "_state", "_guards", "_listeners")

    def __init__(
        self,
        identity: Identity,
        state: SessionState = SessionState.UNLOADED,
    ) -> None:
        self._identity = identity
        self._state = state
        self._guards: dict[SessionTransition, list[TransitionGuard]] = {}
        self._listeners: list[Callable[[StateTransitionEvent], None]] = []
        self._register_default_guards()

    def _register_default_guards(self) -> None:
        terminal_guard = TransitionGuard(
            "not_terminal",
            lambda s: not s.is_terminal,
            "Session is already released",
        )
        for transition in VALID_TRANSITIONS:
            self._guards.setdefault(transition, []).append(terminal_guard)

    def add_guard(
        self,
        from_state: SessionState,
        to_state: SessionState,
        trigger: str,
        guard: TransitionGuard,
    ) -> None:
        """Add custom guard condition to a known transition."""
        transition = SessionTransition(from_state, to_state, trigger)
        if transition in VALID_TRANSITIONS:
            self._guards.setdefault(transition, []).append(guard)

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        self._listeners.append(listener)

    def can(self, trigger: str) -> bool:
        return self._find(trigger) is not None

    def transition(self, trigger: str) -> Result[StateTransitionEvent, SessionError]:
        """
        Attempt the transition named ``trigger`` from the current state.

        Returns:
            Ok(event) on success
            Err(SessionError) when no transition matches or a guard fails
        """
        current = self._state
        valid = self._find(trigger)
        if valid is None:
            return Err(SessionError.invalid_transition(
                self._identity, current.name, trigger
            ))

        for guard in self._guards.get(valid, []):
            check = guard.evaluate(current)
            if check.is_err():
                return Err(SessionError.invalid_transition(
                    self._identity, current.name, trigger
                ))

        self._state = valid.to_state
        event = StateTransitionEvent(
            identity=self._identity,
            from_state=current,
            to_state=valid.to_state,
            trigger=trigger,
            at=time.time(),
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("State listener failed on %s", trigger)
        return Ok(event)

    def _find(self, trigger: str) -> Optional[SessionTransition]:
        for t in VALID_TRANSITIONS:
            if t.from_state == self._state and t.trigger == trigger:
                return t
        return None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> Identity:
        return self._identity
