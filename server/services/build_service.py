"""
Build Service
=============

Dispatches build sessions for epics and stories.

One build session goes through:

1. concurrency guard plus queued insert (one transaction)
2. worktree and prompt preparation
3. ``queued -> running`` and spawn through the process registry
4. a detached finalizer that waits for the process, persists the terminal
   status and closes the session log

Batch modes:

- ``parallel``: every epic is prepared and spawned concurrently
- ``sequential``: epics are spawned one after another in dependency-layer
  order, each reaching ``running`` before the next is prepared
- ``dag``: dependency layers run in order and each layer is awaited to
  completion; dependents of a failed epic are skipped
- ``team``: one project-scoped Claude Code session covering all epics

Only ``dag`` waits for a prerequisite to finish before its dependents
start. ``sequential`` only orders dispatch and ``parallel`` orders nothing.

Reviews start one read-only ``plan`` session per review type on an epic or
story that is already in review.

Work-item status follows sessions through a lifecycle transition hook:
a completed build moves its epic(s) and their unfinished stories to
``review``.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Coroutine, Optional

from api.concurrency import (
    AgentTaskTarget,
    create_queued_session_with_guard,
    create_queued_sessions_with_guard,
    ensure_no_running_session,
)
from api.database import Epic, Project, UserStory, atomic_transaction, new_id
from api.dependency_resolver import TicketNotFoundError, load_graph_for_tickets
from api.lifecycle import (
    DEFAULT_CANCEL_REASON,
    SessionLifecycleConflictError,
    SessionLifecycleManager,
    SessionNotFoundError,
    SessionTransition,
    validate_resume_session,
)
from api.scheduler import (
    LayerResult,
    build_execution_plan,
    execute_dag_plan,
    resolve_transitive_selection,
)
from forge_config import TEAM_BUILD_ALLOWED_TOOLS, VALID_PROVIDERS, ForgeSettings
from prompts import (
    REVIEW_TYPES,
    build_epic_prompt,
    build_review_prompt,
    build_story_prompt,
    build_team_prompt,
)
from providers import get_provider
from providers.base import AgentProvider, SpawnSpec, format_command
from server.services.activity_registry import Activity, ActivityRegistry
from server.services.process_manager import AgentProcessRegistry, SessionInfo
from server.services.session_log import SessionLogWriter
from server.services.workspace import GitWorkspace, WorkspaceError

logger = logging.getLogger(__name__)

BUILD_MODES = ("parallel", "sequential", "dag")

# Story statuses that may be sent to an agent
BUILDABLE_STORY_STATUSES = ("todo", "in_progress", "review")

ProviderFactory = Callable[..., AgentProvider]


class BuildValidationError(Exception):
    """Malformed or unsatisfiable build request."""

    code = "VALIDATION_ERROR"


class ProjectNotFoundError(Exception):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class BuildService:
    """Launches build sessions and keeps work-item status in step with them."""

    def __init__(
        self,
        session_maker,
        lifecycle: SessionLifecycleManager,
        registry: AgentProcessRegistry,
        activities: ActivityRegistry,
        settings: ForgeSettings,
        workspace: Optional[GitWorkspace] = None,
        provider_factory: ProviderFactory = get_provider,
    ):
        self.session_maker = session_maker
        self.lifecycle = lifecycle
        self.registry = registry
        self.activities = activities
        self.settings = settings
        self.workspace = workspace or GitWorkspace()
        self.provider_factory = provider_factory
        self._background_tasks: set[asyncio.Task] = set()

        lifecycle.add_transition_hook(self.cascade_work_item_status)

    # ------------------------------------------------------------------
    # Request validation
    # ------------------------------------------------------------------

    def _resolve_provider(self, provider: Optional[str]) -> str:
        provider_type = provider or self.settings.default_provider
        if provider_type not in VALID_PROVIDERS:
            raise BuildValidationError(
                f"Unknown provider '{provider_type}'. Valid providers: {', '.join(VALID_PROVIDERS)}"
            )
        return provider_type

    def _resolve_repo(self, project_id: str) -> Path:
        session = self.session_maker()
        try:
            project = session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            repo = project.git_repo_path
        finally:
            session.close()

        if not repo:
            raise BuildValidationError("Project has no git repository configured")
        if not self.workspace.is_git_repo(repo):
            raise BuildValidationError(f"Path is not a git repository: {repo}")
        return Path(repo)

    async def _create_worktree(self, repo: Path, ticket_id: str, title: str):
        try:
            return await asyncio.to_thread(self.workspace.create_worktree, repo, ticket_id, title)
        except WorkspaceError as e:
            raise BuildValidationError(str(e)) from e

    # ------------------------------------------------------------------
    # Epic builds
    # ------------------------------------------------------------------

    async def launch_epics(
        self,
        project_id: str,
        epic_ids: list[str],
        mode: str = "parallel",
        team: bool = False,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        include_dependencies: bool = False,
    ) -> dict:
        """Launch build sessions for a set of epics.

        Raises:
            BuildValidationError: empty selection, unknown mode/provider, no repository.
            ProjectNotFoundError, TicketNotFoundError: unknown project or epic.
            AgentAlreadyRunningError: an epic already has a running agent.
        """
        epic_ids = list(dict.fromkeys(epic_ids or []))
        if not epic_ids:
            raise BuildValidationError("epicIds array is required")
        if mode not in BUILD_MODES:
            raise BuildValidationError(f"Invalid mode '{mode}'. Valid modes: {', '.join(BUILD_MODES)}")
        provider_type = self._resolve_provider(provider)
        if team and provider_type != "claude-code":
            raise BuildValidationError(
                "Team mode is only available with Claude Code. "
                "Other providers do not support sub-agent delegation."
            )
        model = model or self.settings.default_model
        repo = self._resolve_repo(project_id)

        auto_included: list[str] = []
        session = self.session_maker()
        try:
            epics = {
                e.id: e.status
                for e in session.query(Epic).filter(Epic.project_id == project_id).all()
            }
            for epic_id in epic_ids:
                if epic_id not in epics:
                    raise TicketNotFoundError(epic_id)

            if include_dependencies:
                selection = resolve_transitive_selection(session, project_id, epic_ids)
                auto_included = sorted(t for t in selection.auto_included if t in epics)
                epic_ids.extend(auto_included)
        finally:
            session.close()

        to_launch = [e for e in epic_ids if epics[e] != "done"]
        if not to_launch:
            raise BuildValidationError("All selected epics are already done")

        if team:
            ensure_no_running_session(
                self.session_maker,
                AgentTaskTarget(project_id),
                "Another agent is already running in this project.",
            )
        else:
            for epic_id in to_launch:
                ensure_no_running_session(
                    self.session_maker,
                    AgentTaskTarget(project_id, epic_id),
                    "Another agent is already running for this epic.",
                )

        if team:
            session_id = await self._launch_team(project_id, repo, to_launch, model)
            return {
                "sessions": [session_id],
                "count": 1,
                "orchestrationMode": "team",
                "mode": mode,
                "autoIncluded": auto_included,
            }

        if mode == "dag":
            return self._launch_dag(project_id, repo, to_launch, provider_type, model, auto_included)

        sessions: list[str] = []
        errors: list[dict] = []

        async def launch(epic_id: str) -> None:
            try:
                session_id, _ = await self._launch_epic(project_id, repo, epic_id, provider_type, model)
                sessions.append(session_id)
            except Exception as e:
                logger.warning("Failed to launch epic %s: %s", epic_id, e)
                errors.append({"epicId": epic_id, "error": str(e), "code": getattr(e, "code", None)})

        if mode == "sequential":
            # Prerequisites reach running before their dependents are prepared
            session = self.session_maker()
            try:
                layers = build_execution_plan(session, to_launch).layers
            finally:
                session.close()
            for layer in layers:
                for epic_id in layer:
                    await launch(epic_id)
        else:
            await asyncio.gather(*(launch(epic_id) for epic_id in to_launch))

        return {
            "sessions": sessions,
            "count": len(sessions),
            "orchestrationMode": "solo",
            "mode": mode,
            "autoIncluded": auto_included,
            "errors": errors,
        }

    async def _launch_epic(
        self,
        project_id: str,
        repo: Path,
        epic_id: str,
        provider_type: str,
        model: Optional[str],
    ) -> tuple[str, asyncio.Task]:
        """Create, persist and spawn one epic session; return (session id, finalizer)."""
        session = self.session_maker()
        try:
            epic = session.get(Epic, epic_id)
            if epic is None:
                raise TicketNotFoundError(epic_id)
            title = epic.title
            prompt = build_epic_prompt(epic, epic.user_stories, repo)
        finally:
            session.close()

        worktree = await self._create_worktree(repo, epic_id, title)
        session_id = new_id()

        record = create_queued_session_with_guard(
            self.lifecycle,
            AgentTaskTarget(project_id, epic_id),
            "Another agent is already running for this epic.",
            id=session_id,
            mode="code",
            orchestration_mode="solo",
            provider=provider_type,
            model=model,
            prompt=prompt,
            logs_path=str(self.settings.session_log_path(session_id)),
            branch_name=worktree.branch_name,
            worktree_path=str(worktree.worktree_path),
            ticket_ids=[epic_id],
        )

        self._mark_work_started(project_id, [epic_id], branch_name=worktree.branch_name)

        finalizer = self._dispatch(
            record,
            cwd=str(worktree.worktree_path),
            allowed_tools=self.settings.build_allowed_tools,
        )
        return session_id, finalizer

    async def _launch_team(
        self,
        project_id: str,
        repo: Path,
        epic_ids: list[str],
        model: Optional[str],
    ) -> str:
        session = self.session_maker()
        try:
            epics = (
                session.query(Epic)
                .filter(Epic.id.in_(epic_ids))
                .order_by(Epic.position)
                .all()
            )
            prompt = build_team_prompt(epics, repo)
        finally:
            session.close()

        session_id = new_id()
        worktree = await self._create_worktree(repo, session_id, "team build")

        record = create_queued_session_with_guard(
            self.lifecycle,
            AgentTaskTarget(project_id),
            "Another agent is already running in this project.",
            id=session_id,
            mode="code",
            orchestration_mode="team",
            provider="claude-code",
            model=model,
            prompt=prompt,
            logs_path=str(self.settings.session_log_path(session_id)),
            branch_name=worktree.branch_name,
            worktree_path=str(worktree.worktree_path),
            ticket_ids=list(epic_ids),
        )

        self._mark_work_started(project_id, epic_ids)
        self._dispatch(record, cwd=str(worktree.worktree_path), allowed_tools=TEAM_BUILD_ALLOWED_TOOLS)
        return session_id

    def _launch_dag(
        self,
        project_id: str,
        repo: Path,
        epic_ids: list[str],
        provider_type: str,
        model: Optional[str],
        auto_included: list[str],
    ) -> dict:
        session = self.session_maker()
        try:
            plan = build_execution_plan(session, epic_ids)
            graph = load_graph_for_tickets(session, epic_ids)
        finally:
            session.close()

        batch_id = new_id()
        batch_sessions: list[str] = []

        async def launch(epic_id: str) -> LayerResult:
            session_id, finalizer = await self._launch_epic(project_id, repo, epic_id, provider_type, model)
            batch_sessions.append(session_id)
            # Shielded: cancelling the batch must not abandon persistence
            info = await asyncio.shield(finalizer)
            status = info.status if info else "failed"
            error = info.result.error if info and info.result else None
            return LayerResult(
                ticket_id=epic_id,
                success=status == "completed",
                session_id=session_id,
                error=error,
            )

        def on_status_change(epic_id: str, status: str, error: Optional[str]) -> None:
            logger.info("Batch %s: epic %s -> %s%s", batch_id, epic_id, status, f" ({error})" if error else "")

        async def run() -> None:
            try:
                final = await execute_dag_plan(plan, graph, launch, on_status_change)
                logger.info("Batch %s finished: %s", batch_id, final)
            finally:
                self.activities.unregister(batch_id)

        task = self._spawn_background(run())

        def cancel_batch() -> None:
            for session_id in list(batch_sessions):
                try:
                    self._cancel_tracked_session(session_id, "Batch build cancelled")
                except (SessionNotFoundError, SessionLifecycleConflictError):
                    pass
            task.cancel()

        self.activities.register(Activity(
            id=batch_id,
            project_id=project_id,
            kind="dag_build",
            label=f"Dependency-ordered build of {len(epic_ids)} epic(s)",
            cancel_callback=cancel_batch,
        ))

        return {
            "batchId": batch_id,
            "sessions": [],
            "count": 0,
            "orchestrationMode": "solo",
            "mode": "dag",
            "autoIncluded": auto_included,
            "plan": plan.to_dict(),
        }

    # ------------------------------------------------------------------
    # Story builds
    # ------------------------------------------------------------------

    async def launch_story(
        self,
        project_id: str,
        story_id: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        resume_session_id: Optional[str] = None,
    ) -> dict:
        """Launch a build session for one user story.

        Raises:
            BuildValidationError, ProjectNotFoundError, TicketNotFoundError,
            AgentAlreadyRunningError
        """
        provider_type = self._resolve_provider(provider)
        model = model or self.settings.default_model
        repo = self._resolve_repo(project_id)

        session = self.session_maker()
        try:
            story = session.get(UserStory, story_id)
            if story is None or story.epic is None or story.epic.project_id != project_id:
                raise TicketNotFoundError(story_id)
            if story.status not in BUILDABLE_STORY_STATUSES:
                raise BuildValidationError(
                    "Story must be in todo, in_progress, or review status to send to dev"
                )
            epic_id = story.epic_id
            epic_title = story.epic.title
            prompt = build_story_prompt(story, story.epic, repo)
        finally:
            session.close()

        target = AgentTaskTarget(project_id, epic_id, story_id)
        ensure_no_running_session(
            self.session_maker, target, "Another agent is already running for this story."
        )

        cli_session_id = None
        resume = False
        if resume_session_id and self.provider_factory(provider_type).supports_resume:
            cli_session_id = validate_resume_session(
                self.session_maker, resume_session_id, epic_id, story_id
            )
            resume = cli_session_id is not None

        worktree = await self._create_worktree(repo, epic_id, epic_title)
        session_id = new_id()

        record = create_queued_session_with_guard(
            self.lifecycle,
            target,
            "Another agent is already running for this story.",
            id=session_id,
            mode="code",
            orchestration_mode="solo",
            provider=provider_type,
            model=model,
            prompt=prompt,
            logs_path=str(self.settings.session_log_path(session_id)),
            branch_name=worktree.branch_name,
            worktree_path=str(worktree.worktree_path),
            cli_session_id=cli_session_id,
            ticket_ids=[story_id],
        )

        with atomic_transaction(self.session_maker) as db:
            story = db.get(UserStory, story_id)
            if story is not None and story.status != "done":
                story.status = "in_progress"

        self._dispatch(
            record,
            cwd=str(worktree.worktree_path),
            allowed_tools=self.settings.build_allowed_tools,
            cli_session_id=cli_session_id,
            resume=resume,
        )
        return {"sessionId": session_id, "resumed": resume}

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    async def launch_review(
        self,
        project_id: str,
        review_types: list[str],
        epic_id: Optional[str] = None,
        story_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> dict:
        """Launch one read-only ``plan`` session per review type.

        Reviews target an epic in ``review`` status, or a story in ``review``
        or ``done`` status when ``story_id`` is given. All sessions are
        inserted behind one guard check and never move work-item status.

        Raises:
            BuildValidationError, ProjectNotFoundError, TicketNotFoundError,
            AgentAlreadyRunningError
        """
        review_types = list(dict.fromkeys(review_types or []))
        if not review_types:
            raise BuildValidationError("reviewTypes array is required with at least one type")
        for review_type in review_types:
            if review_type not in REVIEW_TYPES:
                raise BuildValidationError(
                    f"Invalid review type: {review_type}. Valid types: {', '.join(REVIEW_TYPES)}"
                )
        provider_type = self._resolve_provider(provider)
        model = model or self.settings.default_model
        repo = self._resolve_repo(project_id)

        session = self.session_maker()
        try:
            story = None
            if story_id:
                story = session.get(UserStory, story_id)
                if story is None or story.epic is None or story.epic.project_id != project_id:
                    raise TicketNotFoundError(story_id)
                if story.status not in ("review", "done"):
                    raise BuildValidationError("Story must be in review or done status for agent review")
                epic = story.epic
            else:
                epic = session.get(Epic, epic_id) if epic_id else None
                if epic is None or epic.project_id != project_id:
                    raise TicketNotFoundError(epic_id or "")
                if epic.status != "review":
                    raise BuildValidationError("Epic must be in review status for agent review")
            epic_id = epic.id
            epic_title = epic.title
            prompts = {
                review_type: build_review_prompt(review_type, epic, epic.user_stories, story, repo)
                for review_type in review_types
            }
        finally:
            session.close()

        target = AgentTaskTarget(project_id, epic_id, story_id)
        message = "Another agent is already running for this {}.".format("story" if story_id else "epic")
        ensure_no_running_session(self.session_maker, target, message)

        worktree = await self._create_worktree(repo, epic_id, epic_title)
        rows = []
        for review_type in review_types:
            session_id = new_id()
            rows.append(dict(
                id=session_id,
                mode="plan",
                orchestration_mode="solo",
                provider=provider_type,
                model=model,
                prompt=prompts[review_type],
                logs_path=str(self.settings.session_log_path(session_id)),
                branch_name=worktree.branch_name,
                worktree_path=str(worktree.worktree_path),
                ticket_ids=[story_id or epic_id],
            ))
        records = create_queued_sessions_with_guard(self.lifecycle, target, rows, message)

        for record in records:
            self._dispatch(record, cwd=str(worktree.worktree_path))
        logger.info(
            "Launched %d review session(s) for %s %s",
            len(records), "story" if story_id else "epic", story_id or epic_id,
        )
        return {
            "sessions": [r["id"] for r in records],
            "count": len(records),
            "reviewTypes": review_types,
        }

    # ------------------------------------------------------------------
    # Dispatch and finalization
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        record: dict,
        cwd: str,
        allowed_tools: Optional[list[str]] = None,
        cli_session_id: Optional[str] = None,
        resume: bool = False,
    ) -> asyncio.Task:
        """Promote a queued session to running, spawn it, schedule its finalizer."""
        session_id = record["id"]
        log = SessionLogWriter(Path(record["logs_path"]))
        provider = self.provider_factory(record["provider"], self.settings.kill_grace_seconds)

        spec = SpawnSpec(
            prompt=record["prompt"] or "",
            cwd=cwd,
            mode=record["mode"],
            model=record["model"],
            allowed_tools=allowed_tools,
            cli_session_id=cli_session_id,
            resume=resume,
            on_chunk=log.chunk,
            log_identifier=session_id,
        )

        try:
            self.lifecycle.mark_running(session_id)
        except SessionLifecycleConflictError as e:
            # Cancelled while still queued
            logger.info("Not dispatching session %s: %s", session_id, e)
            return self._spawn_background(self._noop_finalizer(session_id))

        try:
            info = self.registry.start(
                session_id, spec, provider, on_cli_session_id=self.lifecycle.set_cli_session_id
            )
        except Exception as e:
            logger.exception("Failed to start session %s", session_id)
            try:
                self.lifecycle.mark_terminal(session_id, False, f"Failed to start agent: {e}")
            except SessionLifecycleConflictError as conflict:
                logger.info("Session %s already finalized: %s", session_id, conflict)
            log.session_end("failed", str(e))
            return self._spawn_background(self._noop_finalizer(session_id))

        command = format_command(info.command[0], info.command[1:]) if info.command else None
        self.lifecycle.set_cli_command(session_id, command)
        self.lifecycle.set_cli_session_id(session_id, info.cli_session_id)
        log.session_start(session_id, provider.type, command, record["prompt"])

        return self._spawn_background(self._finalize(session_id, log))

    async def _noop_finalizer(self, session_id: str) -> Optional[SessionInfo]:
        return None

    async def _finalize(self, session_id: str, log: SessionLogWriter) -> Optional[SessionInfo]:
        """Wait for the process and persist its terminal status."""
        info: Optional[SessionInfo] = None
        try:
            info = await self.registry.wait_until_settled(session_id)
            if info is None:
                return None
            result = info.result
            error = result.error if result else None
            if info.status == "cancelled":
                self.lifecycle.mark_cancelled(session_id, error or DEFAULT_CANCEL_REASON)
            else:
                success = info.status == "completed"
                self.lifecycle.mark_terminal(session_id, success, None if success else error)
        except (SessionLifecycleConflictError, SessionNotFoundError) as e:
            # Someone else (a cancel request, restart recovery) finalized it first
            logger.info("Session %s already finalized: %s", session_id, e)
        except Exception:
            logger.exception("Failed to finalize session %s", session_id)
        finally:
            if info is not None:
                result = info.result
                log.session_end(
                    info.status,
                    result.error if result else None,
                    result.duration_ms if result else None,
                )
                self.registry.remove(session_id)
        return info

    def _spawn_background(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _cancel_tracked_session(self, session_id: str, reason: str) -> bool:
        self.lifecycle.mark_cancelled(session_id, reason)
        return self.registry.cancel(session_id)

    def cancel_session(self, session_id: str, reason: str = DEFAULT_CANCEL_REASON) -> dict:
        """Cancel a session, falling back to ephemeral activities.

        Raises:
            SessionNotFoundError: neither a session nor an activity has this id.
            SessionLifecycleConflictError: the session already finished.
        """
        try:
            killed = self._cancel_tracked_session(session_id, reason)
        except SessionNotFoundError:
            if self.activities.cancel(session_id):
                return {"id": session_id, "cancelled": True, "source": "activity"}
            raise
        return {"id": session_id, "cancelled": True, "source": "session", "processKilled": killed}

    # ------------------------------------------------------------------
    # Work-item status
    # ------------------------------------------------------------------

    def _mark_work_started(
        self,
        project_id: str,
        epic_ids: list[str],
        branch_name: Optional[str] = None,
    ) -> None:
        with atomic_transaction(self.session_maker) as session:
            for epic in session.query(Epic).filter(Epic.id.in_(epic_ids)).all():
                epic.status = "in_progress"
                if branch_name:
                    epic.branch_name = branch_name
                for story in epic.user_stories:
                    if story.status != "done":
                        story.status = "in_progress"
            project = session.get(Project, project_id)
            if project is not None:
                project.status = "building"

    def cascade_work_item_status(self, transition: SessionTransition) -> None:
        """Transition hook: a completed code session sends its work to review."""
        if transition.to_status != "completed":
            return
        record = transition.record
        if record.get("mode") != "code":
            return

        with atomic_transaction(self.session_maker) as session:
            story_id = record.get("user_story_id")
            if story_id:
                story = session.get(UserStory, story_id)
                if story is not None and story.status != "done":
                    story.status = "review"
                return

            epic_ids = record.get("ticket_ids") or ([record["epic_id"]] if record.get("epic_id") else [])
            for epic in session.query(Epic).filter(Epic.id.in_(epic_ids)).all():
                epic.status = "review"
                for story in epic.user_stories:
                    if story.status != "done":
                        story.status = "review"

        logger.info("Session %s completed; moved work items to review", transition.session_id)

    async def shutdown(self) -> None:
        """Wait for background finalizers; cancel batch schedulers."""
        tasks = list(self._background_tasks)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=10.0)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
