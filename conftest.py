"""
Shared Test Fixtures
====================

Temporary SQLite databases, seeded work items and an in-process agent
provider that never touches a real CLI.
"""

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from api.database import Epic, Project, UserStory, create_database, dispose_engine
from providers.base import AgentProvider, ProviderChunk, ProviderResult, ProviderSession, SpawnSpec
from server.services.workspace import WorktreeInfo


class FakeProvider(AgentProvider):
    """Agent provider whose runs finish only when the test says so."""

    type = "claude-code"
    supports_resume = True

    def __init__(self, kill_grace_seconds: Optional[float] = None, auto_result: Optional[ProviderResult] = None):
        self.auto_result = auto_result
        self.specs: list[SpawnSpec] = []
        self.sessions: list[ProviderSession] = []
        self.killed: list[str] = []
        self.spawn_error: Optional[Exception] = None

    def spawn(self, spec: SpawnSpec) -> ProviderSession:
        if self.spawn_error is not None:
            raise self.spawn_error
        future = asyncio.get_running_loop().create_future()
        handle = f"fake-{len(self.sessions)}"

        def kill() -> None:
            self.killed.append(handle)
            if not future.done():
                future.set_result(ProviderResult(success=False, error="Process was cancelled."))

        session = ProviderSession(
            handle=handle,
            result=future,
            kill=kill,
            command=["fake-agent", "-p", spec.prompt],
            cli_session_id=spec.cli_session_id,
        )
        self.specs.append(spec)
        self.sessions.append(session)
        if spec.on_chunk is not None:
            asyncio.get_running_loop().call_soon(
                spec.on_chunk, ProviderChunk(stream_type="response", text="working on it")
            )
        if self.auto_result is not None:
            future.set_result(self.auto_result)
        return session

    def finish(self, index: int = -1, success: bool = True, error: Optional[str] = None,
               cli_session_id: Optional[str] = None) -> None:
        future = self.sessions[index].result
        if not future.done():
            future.set_result(ProviderResult(
                success=success,
                output="done" if success else None,
                error=error,
                duration_ms=5,
                cli_session_id=cli_session_id,
            ))

    def finish_all(self, success: bool = True, error: Optional[str] = None) -> None:
        for index in range(len(self.sessions)):
            self.finish(index, success=success, error=error)

    async def is_available(self) -> bool:
        return True


class FakeWorkspace:
    """Git workspace stand-in: every path is a repository, worktrees are plain dirs."""

    def __init__(self, root: Path):
        self.root = root
        self.created: list[str] = []

    def is_git_repo(self, path) -> bool:
        return True

    def create_worktree(self, repo_path, ticket_id: str, title: str) -> WorktreeInfo:
        path = self.root / "worktrees" / ticket_id
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(ticket_id)
        return WorktreeInfo(worktree_path=path, branch_name=f"feature/epic-{ticket_id[:8]}")


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 5.0) -> None:
    """Poll `predicate` until it holds; fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def session_maker(tmp_path):
    _, maker = create_database(tmp_path)
    yield maker
    dispose_engine(tmp_path)


@pytest.fixture
def seed(session_maker, tmp_path):
    """Insert a project with three epics and their stories, plus a second project.

    Returns a dict of ids.
    """
    with session_maker() as session:
        project = Project(id="p1", name="Shop", git_repo_path=str(tmp_path / "repo"))
        other = Project(id="p2", name="Other")
        session.add_all([project, other])
        session.flush()
        session.add_all([
            Epic(id="e1", project_id="p1", title="Checkout", status="todo", position=0),
            Epic(id="e2", project_id="p1", title="Payments", status="todo", position=1),
            Epic(id="e3", project_id="p1", title="Reports", status="todo", position=2),
            Epic(id="x1", project_id="p2", title="Elsewhere", status="todo", position=0),
        ])
        session.flush()
        session.add_all([
            UserStory(id="s1", epic_id="e1", title="Cart page", status="todo", position=0),
            UserStory(id="s2", epic_id="e1", title="Order summary", status="todo", position=1),
            UserStory(id="s3", epic_id="e2", title="Card form", status="done", position=0),
        ])
        session.commit()
    return {"project": "p1", "other_project": "p2"}
