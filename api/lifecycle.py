"""
Session Lifecycle Manager
=========================

Persistence-facing half of the session state machine. Every status change
of an ``agent_sessions`` row goes through here:

    create_queued   -> new row in ``queued``
    mark_running    -> queued -> running
    mark_terminal   -> running -> completed | failed
    mark_cancelled  -> queued | running -> cancelled

Each transition reads the current row, validates the move against
``api.status_machine`` and writes the patch inside one ``BEGIN IMMEDIATE``
transaction, so two actors finalizing the same session cannot both win.
The loser gets ``SessionLifecycleConflictError``; background completion
handlers are expected to catch it, log it and move on.

Work-item side effects (moving an epic to ``review`` after a successful
build, for instance) are not hard-coded here: callers register transition
hooks which run after the transition has been committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from api.database import AgentSession, atomic_transaction
from api.status_machine import (
    SESSION_STATUSES,
    TERMINAL_STATUSES,
    is_valid_transition,
    terminal_status_for,
)

logger = logging.getLogger(__name__)

SESSION_LIFECYCLE_CONFLICT_CODE = "INVALID_SESSION_TRANSITION"
SESSION_NOT_FOUND_CODE = "SESSION_NOT_FOUND"

DEFAULT_CANCEL_REASON = "Cancelled by user"

# Sentinel: leave the persisted error column untouched
_UNSET: Any = object()

# Columns a caller may set when creating a queued session
_CREATE_FIELDS = frozenset({
    "id", "project_id", "epic_id", "user_story_id", "mode", "orchestration_mode",
    "provider", "model", "prompt", "logs_path", "branch_name", "worktree_path",
    "cli_session_id", "cli_command", "ticket_ids", "created_at",
})


class SessionLifecycleConflictError(Exception):
    """A persisted status transition is illegal given the row's current status."""

    code = SESSION_LIFECYCLE_CONFLICT_CODE

    def __init__(self, session_id: str, from_status: str | None, to_status: str):
        super().__init__(
            f"Invalid session transition from {from_status or 'unknown'} to {to_status}"
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "code": self.code,
            "data": {
                "sessionId": self.session_id,
                "fromStatus": self.from_status,
                "toStatus": self.to_status,
            },
        }


class SessionNotFoundError(Exception):
    """The referenced session id has no persisted record."""

    code = SESSION_NOT_FOUND_CODE

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


def normalize_session_lifecycle_status(status: str | None) -> str | None:
    """Map stored statuses onto the lifecycle vocabulary; None if unrecognized."""
    if not status:
        return None
    if status == "pending":
        return "queued"
    if status in SESSION_STATUSES:
        return status
    return None


def get_status_for_api(status: str | None) -> str:
    """Status reported to external consumers.

    Legacy ``pending`` is reported as ``queued``; unknown values pass through.
    """
    return normalize_session_lifecycle_status(status) or (status or "queued")


@dataclass
class SessionTransition:
    """A committed status change, handed to transition hooks."""

    session_id: str
    from_status: str
    to_status: str
    at: datetime
    error: str | None
    record: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.to_status in TERMINAL_STATUSES


TransitionHook = Callable[[SessionTransition], None]


def build_transition_patch(
    record: AgentSession,
    to_status: str,
    at: datetime,
    error: Any = _UNSET,
) -> dict:
    """Compute the column updates for moving ``record`` to ``to_status``.

    Raises:
        SessionLifecycleConflictError: if the move is not allowed.
    """
    from_status = normalize_session_lifecycle_status(record.status)
    if from_status is None or not is_valid_transition(from_status, to_status):
        raise SessionLifecycleConflictError(record.id, record.status, to_status)

    patch: dict[str, Any] = {"status": to_status}

    if to_status == "running" and record.started_at is None:
        patch["started_at"] = at

    if to_status in TERMINAL_STATUSES:
        if record.ended_at is None:
            patch["ended_at"] = at
        if record.completed_at is None:
            patch["completed_at"] = at
        if error is not _UNSET:
            patch["error"] = error
        elif to_status == "completed":
            patch["error"] = None

    return patch


class SessionLifecycleManager:
    """Owns every persisted status change of agent sessions."""

    def __init__(
        self,
        session_maker: sessionmaker,
        hooks: Optional[list[TransitionHook]] = None,
    ):
        self.session_maker = session_maker
        self._hooks: list[TransitionHook] = list(hooks or [])

    def add_transition_hook(self, hook: TransitionHook) -> None:
        """Register a callback invoked after each committed transition."""
        self._hooks.append(hook)

    def remove_transition_hook(self, hook: TransitionHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    def _run_hooks(self, transition: SessionTransition) -> None:
        for hook in list(self._hooks):
            try:
                hook(transition)
            except Exception:
                logger.exception(
                    "Transition hook failed for session %s (%s -> %s)",
                    transition.session_id, transition.from_status, transition.to_status,
                )

    def create_queued(self, **values: Any) -> dict:
        """Persist a new session in ``queued`` and return it as a dict.

        Raises:
            SessionLifecycleConflictError: if a session with the same id exists.
            ValueError: for unknown column names.
        """
        unknown = set(values) - _CREATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        try:
            with atomic_transaction(self.session_maker) as session:
                session_id = values.get("id")
                if session_id is not None:
                    existing = session.get(AgentSession, session_id)
                    if existing is not None:
                        raise SessionLifecycleConflictError(session_id, existing.status, "queued")
                record = AgentSession(**values, status="queued")
                session.add(record)
                session.flush()
                snapshot = record.to_dict()
        except IntegrityError as e:
            # Primary-key collision that slipped past the lookup
            raise SessionLifecycleConflictError(values.get("id") or "", None, "queued") from e

        logger.info("Session %s queued (provider=%s)", snapshot["id"], snapshot["provider"])
        return snapshot

    def transition(
        self,
        session_id: str,
        to_status: str,
        at: datetime | None = None,
        error: Any = _UNSET,
    ) -> dict:
        """Apply one validated transition; return the applied patch.

        Raises:
            SessionNotFoundError: unknown session id.
            SessionLifecycleConflictError: illegal move from the stored status.
        """
        at = at or datetime.now(timezone.utc)

        with atomic_transaction(self.session_maker) as session:
            record = session.get(AgentSession, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)

            from_status = normalize_session_lifecycle_status(record.status) or str(record.status)
            patch = build_transition_patch(record, to_status, at, error)
            for column, value in patch.items():
                setattr(record, column, value)
            session.flush()
            snapshot = record.to_dict()

        logger.debug("Session %s: %s -> %s", session_id, from_status, to_status)
        self._run_hooks(SessionTransition(
            session_id=session_id,
            from_status=from_status,
            to_status=to_status,
            at=at,
            error=snapshot.get("error"),
            record=snapshot,
        ))
        return patch

    def mark_running(self, session_id: str, at: datetime | None = None) -> dict:
        return self.transition(session_id, "running", at)

    def mark_terminal(
        self,
        session_id: str,
        success: bool,
        error: str | None = None,
        at: datetime | None = None,
    ) -> dict:
        """Finalize a running session as ``completed`` or ``failed``."""
        return self.transition(session_id, terminal_status_for(success), at, error=error)

    def mark_cancelled(
        self,
        session_id: str,
        reason: str = DEFAULT_CANCEL_REASON,
        at: datetime | None = None,
    ) -> dict:
        return self.transition(session_id, "cancelled", at, error=reason)

    def set_cli_session_id(self, session_id: str, cli_session_id: str | None) -> None:
        """Record the provider's resumption token (best effort)."""
        if not cli_session_id:
            return
        try:
            with atomic_transaction(self.session_maker) as session:
                record = session.get(AgentSession, session_id)
                if record is not None:
                    record.cli_session_id = cli_session_id
        except Exception:
            logger.exception("Failed to persist cli_session_id for session %s", session_id)

    def set_cli_command(self, session_id: str, command: str | None) -> None:
        """Record the spawned command line (best effort)."""
        if not command:
            return
        try:
            with atomic_transaction(self.session_maker) as session:
                record = session.get(AgentSession, session_id)
                if record is not None:
                    record.cli_command = command
        except Exception:
            logger.exception("Failed to persist cli_command for session %s", session_id)

    def get(self, session_id: str) -> dict | None:
        session = self.session_maker()
        try:
            record = session.get(AgentSession, session_id)
            return record.to_dict() if record else None
        finally:
            session.close()

    def list_for_project(self, project_id: str, status: str | None = None) -> list[dict]:
        """Persisted sessions for a project, newest first."""
        session = self.session_maker()
        try:
            query = session.query(AgentSession).filter(AgentSession.project_id == project_id)
            if status is not None:
                query = query.filter(AgentSession.status == status)
            rows = query.order_by(AgentSession.created_at.desc()).all()
            return [row.to_dict() for row in rows]
        finally:
            session.close()

    def recover_interrupted_sessions(self) -> int:
        """Finalize sessions left ``queued``/``running`` by a previous process.

        In-flight process handles do not survive a restart, so these records
        would otherwise stay non-terminal forever.

        Returns:
            Number of sessions finalized
        """
        session = self.session_maker()
        try:
            stale = [
                (row.id, normalize_session_lifecycle_status(row.status))
                for row in session.query(AgentSession)
                .filter(AgentSession.status.in_(["pending", "queued", "running"]))
                .all()
            ]
        finally:
            session.close()

        recovered = 0
        for session_id, status in stale:
            try:
                if status == "running":
                    self.mark_terminal(
                        session_id, False, "Server restarted before the session finished"
                    )
                else:
                    self.mark_cancelled(session_id, "Server restarted before the session started")
                recovered += 1
            except (SessionLifecycleConflictError, SessionNotFoundError) as e:
                logger.info("Skipping recovery of session %s: %s", session_id, e)

        if recovered:
            logger.info("Recovered %d interrupted session(s)", recovered)
        return recovered


def validate_resume_session(
    session_maker: sessionmaker,
    resume_session_id: str | None,
    epic_id: str | None,
    user_story_id: str | None = None,
) -> str | None:
    """Return the CLI session id of an earlier session if it may be resumed.

    The earlier session must belong to the same epic, and to the same story
    when the new session is story-scoped.
    """
    if not resume_session_id:
        return None

    session = session_maker()
    try:
        previous = session.get(AgentSession, resume_session_id)
        if previous is None or not previous.cli_session_id:
            return None
        if previous.epic_id != epic_id:
            return None
        if user_story_id and previous.user_story_id != user_story_id:
            return None
        return previous.cli_session_id
    finally:
        session.close()
