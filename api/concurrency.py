"""
Agent Concurrency Guard
=======================

Prevents two agents from working on overlapping work items at once.

A scope target is ``(project_id, epic_id?, user_story_id?)``. Overlap rules:

* project target: any running session in the project
* epic target: a running session on the epic itself or on any of its stories
* story target: a running session on the story, or an epic-level session on
  the story's parent epic

Project-scoped sessions (no epic, no story) overlap every target.

The guard is a read against persisted state. On its own it is check-then-act
and therefore racy; ``create_queued_session_with_guard`` runs the check and
the insert in one ``BEGIN IMMEDIATE`` transaction for callers that need the
pair to be atomic.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, sessionmaker

from api.database import AgentSession, UserStory, atomic_transaction
from api.lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)

AGENT_ALREADY_RUNNING_CODE = "AGENT_ALREADY_RUNNING"
DEFAULT_CONFLICT_MESSAGE = "Another agent is already running for this task."


@dataclass(frozen=True)
class AgentTaskTarget:
    """Work item a session or concurrency check is anchored to."""

    project_id: str
    epic_id: Optional[str] = None
    user_story_id: Optional[str] = None

    @property
    def scope(self) -> str:
        if self.user_story_id:
            return "story"
        if self.epic_id:
            return "epic"
        return "project"

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"scope": self.scope, "projectId": self.project_id}
        if self.epic_id:
            data["epicId"] = self.epic_id
        if self.user_story_id:
            data["storyId"] = self.user_story_id
        return data


@dataclass(frozen=True)
class ActiveAgentSessionSummary:
    id: str
    project_id: str
    epic_id: Optional[str]
    user_story_id: Optional[str]
    mode: Optional[str]
    provider: Optional[str]
    status: str
    started_at: Optional[str]

    @classmethod
    def from_record(cls, record: AgentSession) -> "ActiveAgentSessionSummary":
        return cls(
            id=record.id,
            project_id=record.project_id,
            epic_id=record.epic_id,
            user_story_id=record.user_story_id,
            mode=record.mode,
            provider=record.provider,
            status=record.status,
            started_at=record.started_at.isoformat() if record.started_at else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "epicId": self.epic_id,
            "userStoryId": self.user_story_id,
            "mode": self.mode,
            "provider": self.provider,
            "status": self.status,
            "startedAt": self.started_at,
        }


class AgentAlreadyRunningError(Exception):
    """A session is already active for an overlapping scope target."""

    code = AGENT_ALREADY_RUNNING_CODE

    def __init__(self, payload: dict):
        super().__init__(payload.get("error", DEFAULT_CONFLICT_MESSAGE))
        self.payload = payload

    @property
    def active_session_id(self) -> str:
        return self.payload["data"]["activeSessionId"]

    @property
    def session_url(self) -> str:
        return self.payload["data"]["sessionUrl"]


def _overlap_condition(session: Session, target: AgentTaskTarget):
    # Project-scoped sessions (team builds) touch every work item
    project_scoped = and_(AgentSession.epic_id.is_(None), AgentSession.user_story_id.is_(None))

    if target.user_story_id:
        epic_id = target.epic_id
        if epic_id is None:
            story = session.get(UserStory, target.user_story_id)
            epic_id = story.epic_id if story else None
        condition = AgentSession.user_story_id == target.user_story_id
        if epic_id:
            # Any session on the parent epic, sibling stories included
            condition = or_(condition, AgentSession.epic_id == epic_id)
        return or_(condition, project_scoped)

    if target.epic_id:
        story_ids = session.query(UserStory.id).filter(UserStory.epic_id == target.epic_id)
        return or_(
            AgentSession.epic_id == target.epic_id,
            AgentSession.user_story_id.in_(story_ids.scalar_subquery()),
            project_scoped,
        )

    return None


def find_active_session_for_target(
    session: Session,
    target: AgentTaskTarget,
    statuses: tuple[str, ...] = ("running",),
) -> Optional[ActiveAgentSessionSummary]:
    """Newest session in ``statuses`` whose scope overlaps ``target``."""
    query = session.query(AgentSession).filter(
        AgentSession.project_id == target.project_id,
        AgentSession.status.in_(statuses),
    )
    condition = _overlap_condition(session, target)
    if condition is not None:
        query = query.filter(condition)

    record = query.order_by(AgentSession.created_at.desc()).first()
    return ActiveAgentSessionSummary.from_record(record) if record else None


def get_running_session_for_target(
    session_maker: sessionmaker,
    target: AgentTaskTarget,
) -> Optional[ActiveAgentSessionSummary]:
    """Return the running session conflicting with ``target``, or None."""
    session = session_maker()
    try:
        return find_active_session_for_target(session, target)
    finally:
        session.close()


def create_agent_already_running_payload(
    target: AgentTaskTarget,
    active_session: ActiveAgentSessionSummary,
    error_message: str = DEFAULT_CONFLICT_MESSAGE,
) -> dict:
    """Structured conflict descriptor for API clients."""
    return {
        "error": error_message,
        "code": AGENT_ALREADY_RUNNING_CODE,
        "data": {
            "activeSessionId": active_session.id,
            "activeSession": active_session.to_dict(),
            "sessionUrl": f"/projects/{target.project_id}/sessions/{active_session.id}",
            "target": target.to_dict(),
        },
    }


def is_agent_already_running_payload(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    data = value.get("data")
    return (
        value.get("code") == AGENT_ALREADY_RUNNING_CODE
        and isinstance(data, dict)
        and isinstance(data.get("activeSessionId"), str)
    )


def ensure_no_running_session(
    session_maker: sessionmaker,
    target: AgentTaskTarget,
    error_message: str = DEFAULT_CONFLICT_MESSAGE,
) -> None:
    """Raise AgentAlreadyRunningError if ``target`` has a running session."""
    conflict = get_running_session_for_target(session_maker, target)
    if conflict is not None:
        raise AgentAlreadyRunningError(
            create_agent_already_running_payload(target, conflict, error_message)
        )


def create_queued_session_with_guard(
    lifecycle: SessionLifecycleManager,
    target: AgentTaskTarget,
    error_message: str = DEFAULT_CONFLICT_MESSAGE,
    **values: Any,
) -> dict:
    """Guard check plus queued insert as one critical section.

    Both ``queued`` and ``running`` sessions count as conflicts here: a
    competing dispatch may have inserted its row without having promoted it
    to ``running`` yet.

    Raises:
        AgentAlreadyRunningError: if an overlapping session is active.
    """
    return create_queued_sessions_with_guard(lifecycle, target, [values], error_message)[0]


def create_queued_sessions_with_guard(
    lifecycle: SessionLifecycleManager,
    target: AgentTaskTarget,
    rows: list[dict],
    error_message: str = DEFAULT_CONFLICT_MESSAGE,
) -> list[dict]:
    """Insert several queued sessions for one target behind a single guard check.

    Used by review dispatch, which starts one session per review type on
    the same work item. Either every row is inserted or none is.

    Raises:
        AgentAlreadyRunningError: if an overlapping session is active.
    """
    snapshots = []
    with atomic_transaction(lifecycle.session_maker) as session:
        conflict = find_active_session_for_target(session, target, ("queued", "running"))
        if conflict is not None:
            raise AgentAlreadyRunningError(
                create_agent_already_running_payload(target, conflict, error_message)
            )
        for values in rows:
            values = dict(values)
            values.setdefault("project_id", target.project_id)
            values.setdefault("epic_id", target.epic_id)
            values.setdefault("user_story_id", target.user_story_id)
            record = AgentSession(**values, status="queued")
            session.add(record)
            session.flush()
            snapshots.append(record.to_dict())

    for snapshot in snapshots:
        logger.info("Session %s queued for %s target", snapshot["id"], target.scope)
    return snapshots
