"""
Dependency Edge Store
=====================

Create, replace, remove and query ``ticket_dependencies`` rows.

All functions take an open SQLAlchemy session and never commit: callers
run them inside ``atomic_transaction`` so that validation and insert (or
delete and re-insert for ``set_ticket_dependencies``) either commit together
or not at all.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from api.database import TicketDependency
from api.dependency_resolver import (
    load_project_graph,
    validate_dag_integrity,
    validate_same_project,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """``ticket_id`` depends on ``depends_on_ticket_id``."""

    ticket_id: str
    depends_on_ticket_id: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.ticket_id, self.depends_on_ticket_id)


def _dedupe(edges: Iterable[DependencyEdge]) -> list[DependencyEdge]:
    seen: set[tuple[str, str]] = set()
    unique: list[DependencyEdge] = []
    for edge in edges:
        if edge.key in seen:
            continue
        seen.add(edge.key)
        unique.append(edge)
    return unique


def create_dependencies(
    session: Session,
    project_id: str,
    edges: Iterable[DependencyEdge],
) -> list[TicketDependency]:
    """Validate and insert a batch of dependency edges.

    Self-loops are dropped silently. The remaining edges must reference
    tickets of ``project_id`` and must keep the graph acyclic when added
    together. Duplicates (within the batch or already stored) are skipped.

    Returns:
        The newly inserted rows (possibly empty)

    Raises:
        TicketNotFoundError, CrossProjectError: ownership validation failed.
        CycleError: the batch would close a cycle. Nothing is inserted.
    """
    candidates = _dedupe(e for e in edges if e.ticket_id != e.depends_on_ticket_id)
    if not candidates:
        return []

    referenced = [t for edge in candidates for t in edge.key]
    validate_same_project(session, project_id, referenced)

    graph = load_project_graph(session, project_id)
    validate_dag_integrity(graph, (edge.key for edge in candidates))

    filters = [
        and_(
            TicketDependency.ticket_id == edge.ticket_id,
            TicketDependency.depends_on_ticket_id == edge.depends_on_ticket_id,
        )
        for edge in candidates
    ]
    existing = {
        (row.ticket_id, row.depends_on_ticket_id)
        for row in session.query(TicketDependency).filter(or_(*filters)).all()
    }

    created: list[TicketDependency] = []
    for edge in candidates:
        if edge.key in existing:
            continue
        row = TicketDependency(
            ticket_id=edge.ticket_id,
            depends_on_ticket_id=edge.depends_on_ticket_id,
            project_id=project_id,
            scope_type="project",
            scope_id=project_id,
        )
        session.add(row)
        created.append(row)

    session.flush()
    if created:
        logger.info("Created %d dependency edge(s) in project %s", len(created), project_id)
    return created


def remove_dependency(session: Session, dependency_id: str, project_id: Optional[str] = None) -> bool:
    """Delete one edge by id, optionally only within ``project_id``.

    Returns False if no such edge exists.
    """
    query = session.query(TicketDependency).filter(TicketDependency.id == dependency_id)
    if project_id is not None:
        query = query.filter(TicketDependency.project_id == project_id)
    deleted = query.delete(synchronize_session=False)
    return deleted > 0


def remove_dependency_edge(session: Session, ticket_id: str, depends_on_ticket_id: str) -> bool:
    """Delete one edge by its endpoint pair."""
    deleted = (
        session.query(TicketDependency)
        .filter(
            TicketDependency.ticket_id == ticket_id,
            TicketDependency.depends_on_ticket_id == depends_on_ticket_id,
        )
        .delete(synchronize_session=False)
    )
    return deleted > 0


def set_ticket_dependencies(
    session: Session,
    project_id: str,
    ticket_id: str,
    depends_on_ids: Iterable[str],
) -> list[TicketDependency]:
    """Replace the full prerequisite set of ``ticket_id``.

    The old edges are deleted and the new set goes through
    ``create_dependencies`` as a fresh batch. A validation failure raises
    before commit, so the caller's transaction restores the old edges.
    """
    (
        session.query(TicketDependency)
        .filter(TicketDependency.ticket_id == ticket_id)
        .delete(synchronize_session=False)
    )
    session.flush()

    edges = [DependencyEdge(ticket_id, dep) for dep in depends_on_ids]
    return create_dependencies(session, project_id, edges)


def get_project_dependencies(session: Session, project_id: str) -> list[TicketDependency]:
    return (
        session.query(TicketDependency)
        .filter(TicketDependency.project_id == project_id)
        .order_by(TicketDependency.created_at)
        .all()
    )


def get_ticket_dependencies(session: Session, ticket_id: str) -> list[TicketDependency]:
    """Edges where ``ticket_id`` is the dependent (its prerequisites)."""
    return (
        session.query(TicketDependency)
        .filter(TicketDependency.ticket_id == ticket_id)
        .all()
    )


def get_ticket_dependents(session: Session, ticket_id: str) -> list[TicketDependency]:
    """Edges where ``ticket_id`` is the prerequisite."""
    return (
        session.query(TicketDependency)
        .filter(TicketDependency.depends_on_ticket_id == ticket_id)
        .all()
    )
