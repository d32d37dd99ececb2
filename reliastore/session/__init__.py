"""
Session module: leases, per-record lifecycle and the live session table.
"""

from reliastore.session.lease import Lease, LeaseManager
from reliastore.session.state_machine import (
    SessionState,
    SessionStateMachine,
    StateTransitionEvent,
    TransitionGuard,
    VALID_TRANSITIONS,
)
from reliastore.session.store import Session, SessionMeta, SessionStore, Validator

__all__ = [
    "Lease",
    "LeaseManager",
    "SessionState",
    "SessionStateMachine",
    "StateTransitionEvent",
    "TransitionGuard",
    "VALID_TRANSITIONS",
    "Session",
    "SessionMeta",
    "SessionStore",
    "Validator",
]
