"""
Execution Planner
=================

Turns a set of tickets into a layered execution plan and, optionally, runs
it. Tickets in the same layer have no dependencies among each other and may
run concurrently; layer ``N+1`` depends only on tickets in layers ``<= N``.

``build_execution_plan`` only provides ordering. Whether a caller waits for
a layer to finish before dispatching the next one is the caller's policy:
``execute_dag_plan`` waits, a parallel batch dispatch does not.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Literal, Optional

from sqlalchemy.orm import Session

from api.database import Epic, UserStory
from api.dependency_resolver import (
    DependencyGraph,
    get_transitive_dependencies,
    load_graph_for_tickets,
    load_project_graph,
    topological_layers,
)

logger = logging.getLogger(__name__)

TicketExecutionStatus = Literal["pending", "running", "done", "failed", "skipped"]

PREREQUISITE_FAILED = "Prerequisite failed"


@dataclass
class BatchExecutionPlan:
    layers: list[list[str]]
    ticket_status: dict[str, TicketExecutionStatus] = field(default_factory=dict)

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    @property
    def ticket_count(self) -> int:
        return sum(len(layer) for layer in self.layers)

    def to_dict(self) -> dict:
        return {
            "layers": self.layers,
            "layerCount": self.layer_count,
            "ticketCount": self.ticket_count,
            "ticketStatus": dict(self.ticket_status),
        }


@dataclass
class TransitiveSelection:
    all: set[str]
    auto_included: set[str]

    def to_dict(self) -> dict:
        return {"all": sorted(self.all), "autoIncluded": sorted(self.auto_included)}


@dataclass
class LayerResult:
    ticket_id: str
    success: bool
    session_id: Optional[str] = None
    error: Optional[str] = None


LaunchFn = Callable[[str], Awaitable[LayerResult]]
StatusCallback = Callable[[str, TicketExecutionStatus, Optional[str]], None]


def _work_item_statuses(session: Session, ticket_ids: list[str]) -> dict[str, str]:
    statuses = {
        row.id: row.status
        for row in session.query(Epic.id, Epic.status).filter(Epic.id.in_(ticket_ids)).all()
    }
    missing = [t for t in ticket_ids if t not in statuses]
    if missing:
        statuses.update(
            (row.id, row.status)
            for row in session.query(UserStory.id, UserStory.status)
            .filter(UserStory.id.in_(missing))
            .all()
        )
    return statuses


def build_execution_plan(session: Session, ticket_ids: Iterable[str]) -> BatchExecutionPlan:
    """Layer ``ticket_ids`` over the dependency edges among them.

    Edges to tickets outside the set are ignored. ``ticket_status`` starts
    as ``done`` for work items already finished and ``pending`` otherwise.

    Raises:
        DependencyGraphError: the induced subgraph could not be layered.
    """
    ordered = list(dict.fromkeys(ticket_ids))
    graph = load_graph_for_tickets(session, ordered)
    layers = topological_layers(graph, ordered)

    work_status = _work_item_statuses(session, ordered)
    ticket_status: dict[str, TicketExecutionStatus] = {
        ticket_id: "done" if work_status.get(ticket_id) == "done" else "pending"
        for ticket_id in ordered
    }

    logger.debug("Execution plan for %d ticket(s): %d layer(s)", len(ordered), len(layers))
    return BatchExecutionPlan(layers=layers, ticket_status=ticket_status)


def resolve_transitive_selection(
    session: Session,
    project_id: str,
    ticket_ids: Iterable[str],
) -> TransitiveSelection:
    """Extend a selection with every direct and indirect prerequisite."""
    selected = set(ticket_ids)
    graph = load_project_graph(session, project_id)
    prerequisites = get_transitive_dependencies(graph, selected)
    return TransitiveSelection(
        all=selected | prerequisites,
        auto_included=prerequisites - selected,
    )


async def execute_dag_plan(
    plan: BatchExecutionPlan,
    graph: DependencyGraph,
    launch_fn: LaunchFn,
    on_status_change: Optional[StatusCallback] = None,
) -> dict[str, TicketExecutionStatus]:
    """Run ``plan`` layer by layer.

    Each layer is launched concurrently and fully awaited before the next
    one starts. A ticket whose prerequisite failed (or was itself skipped)
    is marked ``skipped`` and never launched; independent branches keep
    going. Tickets already ``done`` are not relaunched.

    Returns:
        Final status per ticket (the plan's ``ticket_status`` map)
    """
    status = plan.ticket_status

    def set_status(ticket_id: str, value: TicketExecutionStatus, error: Optional[str] = None):
        status[ticket_id] = value
        if on_status_change is None:
            return
        try:
            on_status_change(ticket_id, value, error)
        except Exception as e:
            logger.warning("Status callback failed for %s: %s", ticket_id, e)

    def has_failed_prerequisite(ticket_id: str) -> bool:
        return any(
            status.get(dep) in ("failed", "skipped") for dep in graph.get(ticket_id, ())
        )

    for index, layer in enumerate(plan.layers):
        launchable: list[str] = []
        for ticket_id in layer:
            if status.get(ticket_id) == "done":
                continue
            if has_failed_prerequisite(ticket_id):
                set_status(ticket_id, "skipped", PREREQUISITE_FAILED)
            else:
                launchable.append(ticket_id)

        if not launchable:
            continue

        for ticket_id in launchable:
            set_status(ticket_id, "running")

        logger.info("Launching layer %d with %d ticket(s)", index, len(launchable))
        results = await asyncio.gather(
            *(launch_fn(ticket_id) for ticket_id in launchable),
            return_exceptions=True,
        )

        for ticket_id, result in zip(launchable, results):
            if isinstance(result, BaseException):
                set_status(ticket_id, "failed", str(result) or "Unknown error")
            elif result.success:
                set_status(ticket_id, "done")
            else:
                set_status(ticket_id, "failed", result.error)

    return status
