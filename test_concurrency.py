"""
Concurrency Guard Tests
=======================

Overlap rules between scope targets and the guarded queued insert.

Run with: pytest test_concurrency.py
"""

import pytest

from api.concurrency import (
    AgentAlreadyRunningError,
    AgentTaskTarget,
    create_agent_already_running_payload,
    create_queued_session_with_guard,
    ensure_no_running_session,
    get_running_session_for_target,
    is_agent_already_running_payload,
)
from api.lifecycle import SessionLifecycleManager


def _running(lifecycle, session_id, epic_id=None, user_story_id=None, project_id="p1"):
    lifecycle.create_queued(
        id=session_id,
        project_id=project_id,
        epic_id=epic_id,
        user_story_id=user_story_id,
        provider="claude-code",
    )
    lifecycle.mark_running(session_id)


def test_target_scope():
    assert AgentTaskTarget("p1").scope == "project"
    assert AgentTaskTarget("p1", "e1").scope == "epic"
    assert AgentTaskTarget("p1", "e1", "s1").scope == "story"
    assert AgentTaskTarget("p1", "e1", "s1").to_dict() == {
        "scope": "story", "projectId": "p1", "epicId": "e1", "storyId": "s1",
    }


def test_epic_run_blocks_its_stories(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "epic-run", epic_id="e1")

    active = get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e1", "s1"))
    assert active is not None and active.id == "epic-run"
    # Story target without epic id resolves the parent epic itself
    active = get_running_session_for_target(session_maker, AgentTaskTarget("p1", None, "s2"))
    assert active is not None and active.id == "epic-run"


def test_story_run_blocks_its_epic(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "story-run", epic_id="e1", user_story_id="s1")

    active = get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e1"))
    assert active is not None and active.id == "story-run"


def test_sibling_stories_conflict(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "story-run", epic_id="e1", user_story_id="s1")
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e1", "s2")).id == "story-run"
    # Parent epic looked up from the story
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", None, "s2")).id == "story-run"
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e2", "s3")) is None


def test_other_epics_and_projects_do_not_conflict(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "epic-run", epic_id="e1")
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e2")) is None
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p2", "x1")) is None


def test_project_target_conflicts_with_anything_in_project(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "story-run", epic_id="e2", user_story_id="s3")
    active = get_running_session_for_target(session_maker, AgentTaskTarget("p1"))
    assert active is not None and active.id == "story-run"


def test_project_scoped_session_blocks_every_target(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "team-run")
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e3")).id == "team-run"
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e1", "s1")).id == "team-run"


def test_terminal_sessions_do_not_conflict(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "epic-run", epic_id="e1")
    lifecycle.mark_terminal("epic-run", False, "boom")
    ensure_no_running_session(session_maker, AgentTaskTarget("p1", "e1"))


def test_queued_sessions_ignored_by_plain_check(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    lifecycle.create_queued(id="waiting", project_id="p1", epic_id="e1", provider="claude-code")
    assert get_running_session_for_target(session_maker, AgentTaskTarget("p1", "e1")) is None


def test_ensure_no_running_session_payload(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    _running(lifecycle, "epic-run", epic_id="e1")

    target = AgentTaskTarget("p1", "e1", "s1")
    with pytest.raises(AgentAlreadyRunningError) as exc:
        ensure_no_running_session(session_maker, target, "Another agent is already running for this story.")

    payload = exc.value.payload
    assert is_agent_already_running_payload(payload)
    assert payload["error"] == "Another agent is already running for this story."
    assert payload["code"] == "AGENT_ALREADY_RUNNING"
    assert exc.value.active_session_id == "epic-run"
    assert exc.value.session_url == "/projects/p1/sessions/epic-run"
    assert payload["data"]["target"]["scope"] == "story"
    assert payload["data"]["activeSession"]["status"] == "running"


def test_is_agent_already_running_payload_rejects_other_shapes():
    assert not is_agent_already_running_payload(None)
    assert not is_agent_already_running_payload({"code": "AGENT_ALREADY_RUNNING"})
    assert not is_agent_already_running_payload({"code": "OTHER", "data": {"activeSessionId": "x"}})


def test_guarded_insert_counts_queued_sessions(session_maker, seed):
    lifecycle = SessionLifecycleManager(session_maker)
    target = AgentTaskTarget("p1", "e1")

    first = create_queued_session_with_guard(lifecycle, target, id="first", provider="claude-code")
    assert first["status"] == "queued"
    assert first["epic_id"] == "e1"
    assert first["project_id"] == "p1"

    with pytest.raises(AgentAlreadyRunningError) as exc:
        create_queued_session_with_guard(lifecycle, target, id="second", provider="claude-code")
    assert exc.value.active_session_id == "first"
    assert lifecycle.get("second") is None

    # Once the first attempt is over the target is free again
    lifecycle.mark_cancelled("first")
    second = create_queued_session_with_guard(lifecycle, target, id="second", provider="claude-code")
    assert second["status"] == "queued"


def test_payload_builder():
    from api.concurrency import ActiveAgentSessionSummary

    summary = ActiveAgentSessionSummary(
        id="s9", project_id="p1", epic_id="e1", user_story_id=None,
        mode="code", provider="codex", status="running", started_at=None,
    )
    payload = create_agent_already_running_payload(AgentTaskTarget("p1", "e1"), summary)
    assert payload["data"]["activeSessionId"] == "s9"
    assert payload["data"]["activeSession"]["provider"] == "codex"
