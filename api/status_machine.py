"""
Session Status Machine
======================

Finite set of agent-session states and the transitions allowed between them.

    queued --> running --> completed
       |          |------> failed
       |          '------> cancelled
       '-----------------> cancelled

``completed``, ``failed`` and ``cancelled`` are terminal. Both the in-memory
process registry and the persisted lifecycle layer consult this module, so
the two can never disagree about what a legal move is.

The only edge out of ``queued`` that does not start the agent is
``queued -> cancelled``: a session cancelled before dispatch never runs and
never reaches ``completed`` or ``failed``. The registry only tracks sessions
from ``running`` on, so in practice only the lifecycle layer takes that edge.
"""

from typing import Literal

SessionStatus = Literal["queued", "running", "completed", "failed", "cancelled"]

SESSION_STATUSES: tuple[str, ...] = ("queued", "running", "completed", "failed", "cancelled")

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# Source status -> statuses it may move to
VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "cancelled"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised by assert_valid_transition for an illegal status change."""

    def __init__(self, session_id: str, from_status: str | None, to_status: str):
        super().__init__(
            f"Invalid session status transition for {session_id}: {from_status} -> {to_status}"
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


def is_valid_transition(from_status: str | None, to_status: str) -> bool:
    """Return True if moving from ``from_status`` to ``to_status`` is allowed.

    Unknown source statuses have no outgoing edges.
    """
    if from_status is None:
        return False
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def assert_valid_transition(session_id: str, from_status: str | None, to_status: str) -> str:
    """Raise InvalidTransitionError unless the move is legal; return ``to_status``."""
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransitionError(session_id, from_status, to_status)
    return to_status


def is_terminal(status: str | None) -> bool:
    """Return True if no transition leaves ``status``."""
    return status in TERMINAL_STATUSES


def terminal_status_for(success: bool) -> SessionStatus:
    """Map a provider outcome onto the terminal status it produces."""
    return "completed" if success else "failed"
