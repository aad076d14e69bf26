"""
Sessions Router
===============

Persisted agent sessions of a project, merged with live process info.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from api.lifecycle import SessionNotFoundError, get_status_for_api
from server.deps import AppServices, get_services
from server.schemas import (
    ActiveSessionsResponse,
    SessionCancelResponse,
    SessionListResponse,
    SessionLogResponse,
    SessionResponse,
)
from server.services.session_log import read_session_log
from server.utils.validation import validate_identifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}/sessions", tags=["sessions"])


def session_to_response(record: dict, services: AppServices) -> SessionResponse:
    live = services.registry.get_status(record["id"])
    data = dict(record)
    data["status"] = get_status_for_api(record["status"])
    data["live"] = live.to_dict() if live else None
    data.pop("prompt", None)
    return SessionResponse(**data)


def _get_project_session(services: AppServices, project_id: str, session_id: str) -> dict:
    record = services.lifecycle.get(session_id)
    if record is None or record["project_id"] != project_id:
        raise SessionNotFoundError(session_id)
    return record


@router.get("", response_model=SessionListResponse, response_model_by_alias=True)
async def list_sessions(
    project_id: str,
    status: Optional[str] = None,
    services: AppServices = Depends(get_services),
):
    validate_identifier(project_id, "project id")
    records = services.lifecycle.list_for_project(project_id, status)
    sessions = [session_to_response(r, services) for r in records]
    return SessionListResponse(sessions=sessions, count=len(sessions))


@router.get("/active", response_model=ActiveSessionsResponse, response_model_by_alias=True)
async def list_active_sessions(project_id: str, services: AppServices = Depends(get_services)):
    """Sessions currently running, plus in-flight batch activities."""
    validate_identifier(project_id, "project id")
    records = services.lifecycle.list_for_project(project_id, "running")
    sessions = [session_to_response(r, services) for r in records]
    activities = [a.to_dict() for a in services.activities.list_by_project(project_id)]
    return ActiveSessionsResponse(sessions=sessions, count=len(sessions), activities=activities)


@router.get("/{session_id}", response_model=SessionResponse, response_model_by_alias=True)
async def get_session(project_id: str, session_id: str, services: AppServices = Depends(get_services)):
    validate_identifier(session_id, "session id")
    record = _get_project_session(services, project_id, session_id)
    return session_to_response(record, services)


@router.get("/{session_id}/logs", response_model=SessionLogResponse, response_model_by_alias=True)
async def get_session_logs(
    project_id: str,
    session_id: str,
    after: int = -1,
    services: AppServices = Depends(get_services),
):
    """NDJSON session log events with ``seq > after``."""
    validate_identifier(session_id, "session id")
    record = _get_project_session(services, project_id, session_id)
    if not record.get("logs_path"):
        raise HTTPException(status_code=404, detail="Session has no log")
    events = read_session_log(Path(record["logs_path"]), after_seq=after)
    return SessionLogResponse(session_id=session_id, events=events)


@router.delete("/{session_id}", response_model=SessionCancelResponse, response_model_by_alias=True)
async def cancel_session(project_id: str, session_id: str, services: AppServices = Depends(get_services)):
    """Cancel a queued or running session (or an in-flight batch activity)."""
    validate_identifier(session_id, "session id")
    record = services.lifecycle.get(session_id)
    if record is not None and record["project_id"] != project_id:
        raise SessionNotFoundError(session_id)
    result = services.build_service.cancel_session(session_id)
    return SessionCancelResponse(**result)
