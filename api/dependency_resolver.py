"""
Dependency Resolver
===================

Graph primitives over ``ticket_dependencies``.

Nodes are tickets (epics or user stories); an edge ``A -> B`` means
"A depends on B", so B must finish before A starts. Everything here is pure
graph work on an adjacency map except the loaders, which read edges and
ticket ownership from the database.

Provides:
- Cycle detection (iterative DFS, reports the closing path)
- Batch DAG validation for a set of proposed edges
- Project ownership validation
- Layered topological order (Kahn's algorithm)
- Transitive prerequisite closure
"""

import logging
from collections import deque
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from api.database import Epic, TicketDependency, UserStory

logger = logging.getLogger(__name__)

# ticket id -> ids it depends on
DependencyGraph = dict[str, set[str]]

# DFS colors
_WHITE, _GRAY, _BLACK = 0, 1, 2


class CycleError(Exception):
    """Adding the proposed edges would close a dependency cycle."""

    code = "CYCLE_DETECTED"

    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle detected: " + " → ".join(cycle))
        self.cycle = cycle


class CrossProjectError(Exception):
    """An edge references a ticket that belongs to another project."""

    code = "CROSS_PROJECT_DEPENDENCY"

    def __init__(self, ticket_id: str, project_id: str):
        super().__init__(f"Ticket {ticket_id} does not belong to project {project_id}")
        self.ticket_id = ticket_id
        self.project_id = project_id


class TicketNotFoundError(Exception):
    code = "TICKET_NOT_FOUND"

    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id


class DependencyGraphError(Exception):
    """Internal invariant violation in the dependency graph."""

    code = "GRAPH_INVARIANT_VIOLATION"


def build_graph(edges: Iterable[tuple[str, str]]) -> DependencyGraph:
    """Adjacency map from ``(ticket_id, depends_on_ticket_id)`` pairs."""
    graph: DependencyGraph = {}
    for ticket_id, depends_on in edges:
        graph.setdefault(ticket_id, set()).add(depends_on)
        graph.setdefault(depends_on, set())
    return graph


def load_project_graph(session: Session, project_id: str) -> DependencyGraph:
    """Load every dependency edge of a project."""
    rows = (
        session.query(TicketDependency.ticket_id, TicketDependency.depends_on_ticket_id)
        .filter(TicketDependency.project_id == project_id)
        .all()
    )
    return build_graph((row[0], row[1]) for row in rows)


def load_graph_for_tickets(session: Session, ticket_ids: Iterable[str]) -> DependencyGraph:
    """Load the induced subgraph over ``ticket_ids``.

    Only edges with both endpoints in the set are kept; every id in the set
    appears as a node even when it has no edges.
    """
    ids = set(ticket_ids)
    graph: DependencyGraph = {ticket_id: set() for ticket_id in ids}
    if not ids:
        return graph

    rows = (
        session.query(TicketDependency.ticket_id, TicketDependency.depends_on_ticket_id)
        .filter(
            TicketDependency.ticket_id.in_(ids),
            TicketDependency.depends_on_ticket_id.in_(ids),
        )
        .all()
    )
    for ticket_id, depends_on in rows:
        graph[ticket_id].add(depends_on)
    return graph


def detect_cycle(graph: DependencyGraph) -> Optional[list[str]]:
    """Return one cycle as a closed path ``[A, B, ..., A]``, or None.

    Iterative three-color DFS; nodes are visited in sorted order so the
    reported cycle is deterministic for a given graph.
    """
    color: dict[str, int] = {}

    for root in sorted(graph):
        if color.get(root, _WHITE) != _WHITE:
            continue

        path: list[str] = [root]
        color[root] = _GRAY
        stack = [iter(sorted(graph.get(root, ())))]

        while stack:
            advanced = False
            for neighbor in stack[-1]:
                state = color.get(neighbor, _WHITE)
                if state == _GRAY:
                    start = path.index(neighbor)
                    return path[start:] + [neighbor]
                if state == _WHITE:
                    color[neighbor] = _GRAY
                    path.append(neighbor)
                    stack.append(iter(sorted(graph.get(neighbor, ()))))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = _BLACK
                stack.pop()

    return None


def validate_dag_integrity(
    graph: DependencyGraph,
    new_edges: Iterable[tuple[str, str]],
) -> None:
    """Raise CycleError if adding all of ``new_edges`` at once creates a cycle.

    The edges are added as one batch: two edges that only close a cycle
    together are rejected just like a single closing edge.
    """
    merged: DependencyGraph = {node: set(deps) for node, deps in graph.items()}
    for ticket_id, depends_on in new_edges:
        merged.setdefault(ticket_id, set()).add(depends_on)
        merged.setdefault(depends_on, set())

    cycle = detect_cycle(merged)
    if cycle is not None:
        raise CycleError(cycle)


def get_ticket_project_ids(session: Session, ticket_ids: Iterable[str]) -> dict[str, str]:
    """Map ticket id -> owning project id. Stories resolve through their epic."""
    ids = set(ticket_ids)
    if not ids:
        return {}

    owners: dict[str, str] = {}
    for epic_id, project_id in (
        session.query(Epic.id, Epic.project_id).filter(Epic.id.in_(ids)).all()
    ):
        owners[epic_id] = project_id

    remaining = ids - set(owners)
    if remaining:
        for story_id, project_id in (
            session.query(UserStory.id, Epic.project_id)
            .join(Epic, UserStory.epic_id == Epic.id)
            .filter(UserStory.id.in_(remaining))
            .all()
        ):
            owners[story_id] = project_id

    return owners


def validate_same_project(session: Session, project_id: str, ticket_ids: Iterable[str]) -> None:
    """Check every ticket exists and belongs to ``project_id``.

    Raises:
        TicketNotFoundError: a ticket id matches no epic or story.
        CrossProjectError: a ticket belongs to another project.
    """
    ordered = list(dict.fromkeys(ticket_ids))
    owners = get_ticket_project_ids(session, ordered)
    for ticket_id in ordered:
        owner = owners.get(ticket_id)
        if owner is None:
            raise TicketNotFoundError(ticket_id)
        if owner != project_id:
            raise CrossProjectError(ticket_id, project_id)


def topological_layers(graph: DependencyGraph, order: Optional[list[str]] = None) -> list[list[str]]:
    """Partition ``graph`` into layers with Kahn's algorithm.

    Every ticket in layer ``i`` has all of its dependencies in layers
    ``< i``. Within a layer, tickets keep their position in ``order`` (or
    sorted order when not given).

    Raises:
        DependencyGraphError: if some nodes cannot be layered.
    """
    nodes = list(order) if order is not None else sorted(graph)
    position = {node: index for index, node in enumerate(nodes)}

    in_degree = {node: 0 for node in nodes}
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    for node in nodes:
        for depends_on in graph.get(node, ()):
            if depends_on not in position:
                continue
            in_degree[node] += 1
            dependents[depends_on].append(node)

    layers: list[list[str]] = []
    current = [node for node in nodes if in_degree[node] == 0]
    placed = 0

    while current:
        layers.append(current)
        placed += len(current)
        ready: list[str] = []
        for node in current:
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
        current = sorted(ready, key=position.__getitem__)

    if placed != len(nodes):
        stuck = [node for node in nodes if in_degree[node] > 0]
        logger.error("Topological layering left %d ticket(s) unplaced: %s", len(stuck), stuck)
        raise DependencyGraphError(
            f"Dependency graph could not be fully layered; unplaced tickets: {', '.join(stuck)}"
        )

    return layers


def get_transitive_dependencies(graph: DependencyGraph, ticket_ids: Iterable[str]) -> set[str]:
    """All direct and indirect prerequisites of ``ticket_ids`` (BFS).

    The starting tickets themselves are only included if one of them is a
    prerequisite of another.
    """
    seen: set[str] = set()
    queue = deque(ticket_ids)
    while queue:
        ticket_id = queue.popleft()
        for depends_on in graph.get(ticket_id, ()):
            if depends_on not in seen:
                seen.add(depends_on)
                queue.append(depends_on)
    return seen


def get_transitive_dependents(graph: DependencyGraph, ticket_ids: Iterable[str]) -> set[str]:
    """All tickets that directly or indirectly depend on ``ticket_ids``."""
    reverse: DependencyGraph = {}
    for node, deps in graph.items():
        for depends_on in deps:
            reverse.setdefault(depends_on, set()).add(node)
    return get_transitive_dependencies(reverse, ticket_ids)
