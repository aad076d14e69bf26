"""
Error Responses
===============

Maps domain exceptions onto HTTP responses. Every body carries ``error``
(human message) and ``code`` (stable identifier).
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.concurrency import AgentAlreadyRunningError
from api.dependency_resolver import (
    CrossProjectError,
    CycleError,
    DependencyGraphError,
    TicketNotFoundError,
)
from api.lifecycle import SessionLifecycleConflictError, SessionNotFoundError
from server.services.build_service import BuildValidationError, ProjectNotFoundError
from server.services.process_manager import SessionAlreadyRunningError

logger = logging.getLogger(__name__)

# Exception class -> HTTP status
STATUS_CODES: dict[type, int] = {
    BuildValidationError: 400,
    ProjectNotFoundError: 404,
    TicketNotFoundError: 404,
    SessionNotFoundError: 404,
    AgentAlreadyRunningError: 409,
    SessionAlreadyRunningError: 409,
    SessionLifecycleConflictError: 409,
    CycleError: 422,
    CrossProjectError: 422,
    DependencyGraphError: 500,
}


def error_body(exc: Exception) -> dict:
    if isinstance(exc, AgentAlreadyRunningError):
        return exc.payload
    if isinstance(exc, SessionLifecycleConflictError):
        return exc.to_dict()
    body = {"error": str(exc), "code": getattr(exc, "code", "INTERNAL_ERROR")}
    if isinstance(exc, CycleError):
        body["cycle"] = exc.cycle
    elif isinstance(exc, CrossProjectError):
        body["ticketId"] = exc.ticket_id
    return body


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=error_body(exc))


def install_exception_handlers(app: FastAPI) -> None:
    for exc_class in STATUS_CODES:
        app.add_exception_handler(exc_class, domain_error_handler)
