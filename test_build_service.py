"""
Build Service Tests
===================

Batch, story and review dispatch, cancellation, dependency-ordered batches
and work-item status cascade, with a fake provider and workspace.

Run with: pytest test_build_service.py
"""

import asyncio

import pytest

from api.concurrency import AgentAlreadyRunningError
from api.database import Epic, Project, UserStory, atomic_transaction
from api.dependencies import DependencyEdge, create_dependencies
from api.dependency_resolver import TicketNotFoundError
from api.lifecycle import SessionLifecycleConflictError, SessionLifecycleManager, SessionNotFoundError
from conftest import FakeProvider, FakeWorkspace, eventually, settle
from forge_config import ForgeSettings
from server.services.activity_registry import ActivityRegistry
from server.services.build_service import BuildService, BuildValidationError, ProjectNotFoundError
from server.services.process_manager import AgentProcessRegistry
from server.services.session_log import read_session_log


def _service(session_maker, tmp_path, provider=None, **settings_overrides):
    provider = provider or FakeProvider()
    service = BuildService(
        session_maker,
        SessionLifecycleManager(session_maker),
        AgentProcessRegistry(),
        ActivityRegistry(),
        ForgeSettings(data_dir=tmp_path, **settings_overrides),
        workspace=FakeWorkspace(tmp_path),
        provider_factory=lambda provider_type, grace=None: provider,
    )
    return service, provider


def _status(session_maker, model, item_id):
    with session_maker() as session:
        return session.get(model, item_id).status


def _add_edges(session_maker, *pairs):
    with atomic_transaction(session_maker) as session:
        create_dependencies(session, "p1", [DependencyEdge(a, b) for a, b in pairs])


def test_parallel_build_runs_and_cascades(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1", "e2"])
        assert data["count"] == 2
        assert data["mode"] == "parallel"
        assert data["orchestrationMode"] == "solo"
        assert data["errors"] == []
        assert len(provider.specs) == 2

        for session_id in data["sessions"]:
            record = service.lifecycle.get(session_id)
            assert record["status"] == "running"
            assert record["cli_command"].startswith("fake-agent")
        assert _status(session_maker, Epic, "e1") == "in_progress"
        assert _status(session_maker, UserStory, "s1") == "in_progress"
        assert _status(session_maker, Project, "p1") == "building"

        provider.finish_all()
        await eventually(lambda: all(
            service.lifecycle.get(s)["status"] == "completed" for s in data["sessions"]
        ))
        await service.shutdown()
        return data

    data = asyncio.run(run())

    assert _status(session_maker, Epic, "e1") == "review"
    assert _status(session_maker, Epic, "e2") == "review"
    assert _status(session_maker, UserStory, "s1") == "review"
    assert _status(session_maker, UserStory, "s2") == "review"
    # Finished stories stay finished
    assert _status(session_maker, UserStory, "s3") == "done"

    # Finalized sessions are dropped from the in-memory registry
    assert service.registry.list_all() == []

    record = service.lifecycle.get(data["sessions"][0])
    events = read_session_log(tmp_path / "sessions" / record["id"] / "logs.ndjson")
    assert [e["type"] for e in events] == ["session_start", "chunk", "session_end"]
    assert events[-1]["status"] == "completed"


def test_sequential_build(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e2", "e1"], mode="sequential")
        provider.finish_all()
        await service.shutdown()
        return data

    data = asyncio.run(run())
    assert data["mode"] == "sequential"
    assert data["count"] == 2
    assert [s.prompt.splitlines()[2] for s in provider.specs] == ["# Epic: Payments", "# Epic: Checkout"]


def test_sequential_build_dispatches_prerequisites_first(session_maker, seed, tmp_path):
    _add_edges(session_maker, ("e2", "e1"))
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e2"], mode="sequential", include_dependencies=True)
        provider.finish_all()
        await service.shutdown()
        return data

    data = asyncio.run(run())
    assert data["autoIncluded"] == ["e1"]
    assert [service.lifecycle.get(s)["epic_id"] for s in data["sessions"]] == ["e1", "e2"]
    assert [s.prompt.splitlines()[2] for s in provider.specs] == ["# Epic: Checkout", "# Epic: Payments"]


def test_validation_errors(session_maker, seed, tmp_path):
    service, _ = _service(session_maker, tmp_path)

    async def run():
        with pytest.raises(BuildValidationError, match="epicIds array is required"):
            await service.launch_epics("p1", [])
        with pytest.raises(BuildValidationError, match="Invalid mode"):
            await service.launch_epics("p1", ["e1"], mode="random")
        with pytest.raises(BuildValidationError, match="Unknown provider"):
            await service.launch_epics("p1", ["e1"], provider="copilot")
        with pytest.raises(BuildValidationError, match="Team mode is only available with Claude Code"):
            await service.launch_epics("p1", ["e1"], team=True, provider="codex")
        with pytest.raises(BuildValidationError, match="no git repository"):
            await service.launch_epics("p2", ["x1"])
        with pytest.raises(ProjectNotFoundError):
            await service.launch_epics("nope", ["e1"])
        with pytest.raises(TicketNotFoundError):
            await service.launch_epics("p1", ["x1"])

    asyncio.run(run())


def test_done_epics_are_not_relaunched(session_maker, seed, tmp_path):
    with atomic_transaction(session_maker) as session:
        session.get(Epic, "e1").status = "done"
    service, provider = _service(session_maker, tmp_path)

    async def run():
        with pytest.raises(BuildValidationError, match="already done"):
            await service.launch_epics("p1", ["e1"])
        data = await service.launch_epics("p1", ["e1", "e2"])
        provider.finish_all()
        await service.shutdown()
        return data

    data = asyncio.run(run())
    assert data["count"] == 1
    assert service.lifecycle.get(data["sessions"][0])["epic_id"] == "e2"


def test_running_epic_blocks_second_build(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        first = await service.launch_epics("p1", ["e1"])
        with pytest.raises(AgentAlreadyRunningError) as exc:
            await service.launch_epics("p1", ["e1"])
        assert exc.value.active_session_id == first["sessions"][0]
        with pytest.raises(AgentAlreadyRunningError):
            await service.launch_story("p1", "s2")
        # Unrelated epic is fine
        other = await service.launch_epics("p1", ["e3"])
        provider.finish_all()
        await service.shutdown()
        return other

    assert asyncio.run(run())["count"] == 1


def test_include_dependencies(session_maker, seed, tmp_path):
    _add_edges(session_maker, ("e3", "e2"))
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e3"], include_dependencies=True)
        provider.finish_all()
        await service.shutdown()
        return data

    data = asyncio.run(run())
    assert data["autoIncluded"] == ["e2"]
    assert data["count"] == 2


def test_team_build(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1", "e2"], team=True)
        session_id = data["sessions"][0]
        record = service.lifecycle.get(session_id)
        assert record["orchestration_mode"] == "team"
        assert record["epic_id"] is None
        assert record["ticket_ids"] == ["e1", "e2"]
        assert "Task" in provider.specs[0].allowed_tools

        # A project-scoped session blocks story builds too
        with pytest.raises(AgentAlreadyRunningError):
            await service.launch_story("p1", "s1")

        provider.finish_all()
        await eventually(lambda: service.lifecycle.get(session_id)["status"] == "completed")
        await service.shutdown()
        return data

    data = asyncio.run(run())
    assert data["orchestrationMode"] == "team"
    assert _status(session_maker, Epic, "e1") == "review"
    assert _status(session_maker, Epic, "e2") == "review"


def test_failed_build_leaves_work_in_progress(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1"])
        provider.finish_all(success=False, error="Claude CLI exited with code 1")
        session_id = data["sessions"][0]
        await eventually(lambda: service.lifecycle.get(session_id)["status"] == "failed")
        await service.shutdown()
        return service.lifecycle.get(session_id)

    record = asyncio.run(run())
    assert record["error"] == "Claude CLI exited with code 1"
    assert _status(session_maker, Epic, "e1") == "in_progress"


def test_spawn_failure_marks_session_failed(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)
    provider.spawn_error = RuntimeError("no pty")

    async def run():
        data = await service.launch_epics("p1", ["e1"])
        await service.shutdown()
        return data

    data = asyncio.run(run())
    record = service.lifecycle.get(data["sessions"][0])
    assert record["status"] == "failed"
    assert "no pty" in record["error"]


def test_cancel_running_session(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1"])
        session_id = data["sessions"][0]
        result = service.cancel_session(session_id)
        assert result == {"id": session_id, "cancelled": True, "source": "session", "processKilled": True}
        await eventually(lambda: service.registry.get_status(session_id) is None)

        with pytest.raises(SessionLifecycleConflictError):
            service.cancel_session(session_id)
        with pytest.raises(SessionNotFoundError):
            service.cancel_session("unknown")
        await service.shutdown()
        return service.lifecycle.get(session_id)

    record = asyncio.run(run())
    assert record["status"] == "cancelled"
    assert record["error"] == "Cancelled by user"
    assert provider.killed == ["fake-0"]
    # No cascade for cancelled work
    assert _status(session_maker, Epic, "e1") == "in_progress"


def test_story_build_and_resume(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        first = await service.launch_story("p1", "s1")
        assert first["resumed"] is False
        record = service.lifecycle.get(first["sessionId"])
        assert record["user_story_id"] == "s1"
        assert record["epic_id"] == "e1"
        assert _status(session_maker, UserStory, "s1") == "in_progress"

        provider.finish(cli_session_id="cli-77")
        await eventually(lambda: service.lifecycle.get(first["sessionId"])["status"] == "completed")
        assert service.lifecycle.get(first["sessionId"])["cli_session_id"] == "cli-77"
        assert _status(session_maker, UserStory, "s1") == "review"
        # Story completion does not move the epic
        assert _status(session_maker, Epic, "e1") == "todo"

        second = await service.launch_story("p1", "s1", resume_session_id=first["sessionId"])
        provider.finish()
        await service.shutdown()
        return second

    second = asyncio.run(run())
    assert second["resumed"] is True
    assert provider.specs[-1].resume is True
    assert provider.specs[-1].cli_session_id == "cli-77"


def test_story_validation(session_maker, seed, tmp_path):
    with atomic_transaction(session_maker) as session:
        session.get(Project, "p2").git_repo_path = str(tmp_path / "other-repo")
    service, _ = _service(session_maker, tmp_path)

    async def run():
        with pytest.raises(BuildValidationError, match="todo, in_progress, or review"):
            await service.launch_story("p1", "s3")
        with pytest.raises(TicketNotFoundError):
            await service.launch_story("p1", "missing")
        with pytest.raises(TicketNotFoundError):
            await service.launch_story("p2", "s1")

    asyncio.run(run())


def test_dag_build_runs_layers_in_order(session_maker, seed, tmp_path):
    _add_edges(session_maker, ("e2", "e1"))
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e2", "e1"], mode="dag")
        assert data["plan"]["layers"] == [["e1"], ["e2"]]
        batch_id = data["batchId"]
        assert service.activities.get(batch_id) is not None

        await eventually(lambda: len(provider.specs) == 1)
        await settle()
        assert "Checkout" in provider.specs[0].prompt
        provider.finish(0)

        await eventually(lambda: len(provider.specs) == 2)
        assert "Payments" in provider.specs[1].prompt
        provider.finish(1)

        await eventually(lambda: service.activities.get(batch_id) is None)
        await service.shutdown()

    asyncio.run(run())
    assert _status(session_maker, Epic, "e1") == "review"
    assert _status(session_maker, Epic, "e2") == "review"


def test_dag_build_skips_dependents_of_failure(session_maker, seed, tmp_path):
    _add_edges(session_maker, ("e2", "e1"))
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1", "e2", "e3"], mode="dag")
        assert data["plan"]["layers"] == [["e1", "e3"], ["e2"]]
        await eventually(lambda: len(provider.specs) == 2)
        for index, spec in enumerate(provider.specs):
            provider.finish(index, success="Reports" in spec.prompt, error="tests failed")
        await eventually(lambda: service.activities.get(data["batchId"]) is None)
        await service.shutdown()

    asyncio.run(run())
    assert len(provider.specs) == 2
    assert _status(session_maker, Epic, "e3") == "review"
    assert _status(session_maker, Epic, "e1") == "in_progress"
    assert _status(session_maker, Epic, "e2") == "todo"


def test_dag_build_cancel_through_activity(session_maker, seed, tmp_path):
    _add_edges(session_maker, ("e2", "e1"))
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_epics("p1", ["e1", "e2"], mode="dag")
        await eventually(lambda: len(provider.specs) == 1)
        await settle()

        result = service.cancel_session(data["batchId"])
        assert result == {"id": data["batchId"], "cancelled": True, "source": "activity"}
        await service.shutdown()
        return service.lifecycle.list_for_project("p1")

    records = asyncio.run(run())
    assert len(provider.specs) == 1
    assert [r["status"] for r in records] == ["cancelled"]
    assert _status(session_maker, Epic, "e2") == "todo"


def test_epic_review_starts_one_plan_session_per_type(session_maker, seed, tmp_path):
    with atomic_transaction(session_maker) as session:
        session.get(Epic, "e1").status = "review"
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_review("p1", ["security", "code_review", "security"], epic_id="e1")
        assert data["count"] == 2
        assert data["reviewTypes"] == ["security", "code_review"]
        records = [service.lifecycle.get(s) for s in data["sessions"]]
        assert [r["status"] for r in records] == ["running", "running"]
        assert {r["mode"] for r in records} == {"plan"}
        assert {r["epic_id"] for r in records} == {"e1"}
        assert [r["ticket_ids"] for r in records] == [["e1"], ["e1"]]
        assert [s.mode for s in provider.specs] == ["plan", "plan"]
        assert "Security Review" in provider.specs[0].prompt
        assert "Code Review" in provider.specs[1].prompt

        # The epic is busy until the reviews finish
        with pytest.raises(AgentAlreadyRunningError):
            await service.launch_review("p1", ["compliance"], epic_id="e1")

        provider.finish_all()
        await eventually(lambda: all(
            service.lifecycle.get(s)["status"] == "completed" for s in data["sessions"]
        ))
        await service.shutdown()

    asyncio.run(run())
    # Reviews never move work items
    assert _status(session_maker, Epic, "e1") == "review"
    assert _status(session_maker, UserStory, "s1") == "todo"


def test_story_review(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        data = await service.launch_review("p1", ["compliance"], story_id="s3")
        record = service.lifecycle.get(data["sessions"][0])
        provider.finish_all()
        await service.shutdown()
        return record

    record = asyncio.run(run())
    assert record["user_story_id"] == "s3"
    assert record["epic_id"] == "e2"
    assert record["mode"] == "plan"
    assert "Compliance & Accessibility Review" in provider.specs[0].prompt
    assert "Card form" in provider.specs[0].prompt


def test_review_validation(session_maker, seed, tmp_path):
    service, provider = _service(session_maker, tmp_path)

    async def run():
        with pytest.raises(BuildValidationError, match="reviewTypes array is required"):
            await service.launch_review("p1", [], epic_id="e1")
        with pytest.raises(BuildValidationError, match="Invalid review type: style"):
            await service.launch_review("p1", ["security", "style"], epic_id="e1")
        with pytest.raises(BuildValidationError, match="Epic must be in review status"):
            await service.launch_review("p1", ["security"], epic_id="e1")
        with pytest.raises(BuildValidationError, match="Story must be in review or done status"):
            await service.launch_review("p1", ["security"], story_id="s1")
        with pytest.raises(TicketNotFoundError):
            await service.launch_review("p1", ["security"], epic_id="x1")
        with pytest.raises(TicketNotFoundError):
            await service.launch_review("p1", ["security"], story_id="missing")

    asyncio.run(run())
    assert provider.specs == []
    assert service.lifecycle.list_for_project("p1") == []
