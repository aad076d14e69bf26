"""
Dependencies Router
===================

Dependency edges between tickets, execution plans and transitive selection.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from api.database import atomic_transaction
from api.dependencies import (
    DependencyEdge,
    create_dependencies,
    get_project_dependencies,
    remove_dependency,
    set_ticket_dependencies,
)
from api.scheduler import build_execution_plan, resolve_transitive_selection
from server.deps import AppServices, get_db_session, get_services
from server.schemas import (
    DependencyCreateRequest,
    DependencyListResponse,
    DependencyResponse,
    ExecutionPlanResponse,
    TicketDependenciesUpdate,
    TicketIdsRequest,
    TransitiveSelectionResponse,
)
from server.utils.validation import validate_identifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}", tags=["dependencies"])


def _to_list_response(rows) -> DependencyListResponse:
    deps = [DependencyResponse(**row.to_dict()) for row in rows]
    return DependencyListResponse(dependencies=deps, count=len(deps))


@router.get("/dependencies", response_model=DependencyListResponse, response_model_by_alias=True)
async def list_dependencies(project_id: str, services: AppServices = Depends(get_services)):
    validate_identifier(project_id, "project id")
    with get_db_session(services) as session:
        return _to_list_response(get_project_dependencies(session, project_id))


@router.post(
    "/dependencies",
    response_model=DependencyListResponse,
    response_model_by_alias=True,
    status_code=201,
)
async def add_dependencies(
    project_id: str,
    request: DependencyCreateRequest,
    services: AppServices = Depends(get_services),
):
    """Create a batch of edges. The batch is validated and committed as a whole."""
    validate_identifier(project_id, "project id")
    edges = [DependencyEdge(e.ticket_id, e.depends_on_ticket_id) for e in request.edges]
    with atomic_transaction(services.session_maker) as session:
        created = create_dependencies(session, project_id, edges)
        response = _to_list_response(created)
    return response


@router.delete("/dependencies/{dependency_id}")
async def delete_dependency(project_id: str, dependency_id: str, services: AppServices = Depends(get_services)):
    validate_identifier(project_id, "project id")
    validate_identifier(dependency_id, "dependency id")
    with atomic_transaction(services.session_maker) as session:
        deleted = remove_dependency(session, dependency_id, project_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Dependency not found")
    return {"deleted": True, "id": dependency_id}


@router.put(
    "/tickets/{ticket_id}/dependencies",
    response_model=DependencyListResponse,
    response_model_by_alias=True,
)
async def replace_ticket_dependencies(
    project_id: str,
    ticket_id: str,
    request: TicketDependenciesUpdate,
    services: AppServices = Depends(get_services),
):
    """Replace every prerequisite of one ticket."""
    validate_identifier(ticket_id, "ticket id")
    with atomic_transaction(services.session_maker) as session:
        created = set_ticket_dependencies(session, project_id, ticket_id, request.depends_on)
        response = _to_list_response(created)
    return response


@router.post("/dependencies/plan", response_model=ExecutionPlanResponse, response_model_by_alias=True)
async def execution_plan(
    project_id: str,
    request: TicketIdsRequest,
    services: AppServices = Depends(get_services),
):
    """Layered execution order for the given tickets."""
    if not request.ticket_ids:
        raise HTTPException(status_code=400, detail="ticketIds must be a non-empty array")
    with get_db_session(services) as session:
        plan = build_execution_plan(session, request.ticket_ids)
    return ExecutionPlanResponse(
        layers=plan.layers,
        layer_count=plan.layer_count,
        ticket_count=plan.ticket_count,
        ticket_status=plan.ticket_status,
    )


@router.post(
    "/dependencies/selection",
    response_model=TransitiveSelectionResponse,
    response_model_by_alias=True,
)
async def transitive_selection(
    project_id: str,
    request: TicketIdsRequest,
    services: AppServices = Depends(get_services),
):
    """Selected tickets plus every prerequisite they transitively need."""
    if not request.ticket_ids:
        raise HTTPException(status_code=400, detail="ticketIds must be a non-empty array")
    with get_db_session(services) as session:
        selection = resolve_transitive_selection(session, project_id, request.ticket_ids)
    return TransitiveSelectionResponse(
        all=sorted(selection.all),
        auto_included=sorted(selection.auto_included),
    )
