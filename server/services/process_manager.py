"""
Agent Process Registry
======================

In-memory tracking of running agent processes, keyed by session id.

The registry is constructed explicitly (one per server, one per test) and
owns the ephemeral half of a session's life: the provider handle, the
in-flight result and the live status. Persisted status lives in
``api.lifecycle``; callers bridge the two.

Status changes go through ``api.status_machine``. In particular a result
that arrives after ``cancel()`` is discarded, since ``cancelled`` is
terminal.

Methods must be called from the event loop thread that runs the agents.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from api.status_machine import is_terminal, is_valid_transition, terminal_status_for
from providers.base import AgentProvider, ProviderChunk, ProviderResult, ProviderSession, SpawnSpec

logger = logging.getLogger(__name__)

CANCELLED_BY_USER_ERROR = "Process was cancelled by user."

CliSessionIdHook = Callable[[str, str], None]


class SessionAlreadyRunningError(Exception):
    """``start()`` was called for a session id that is still active."""

    code = "SESSION_ALREADY_RUNNING"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already running")
        self.session_id = session_id


@dataclass
class SessionInfo:
    """Snapshot of one tracked session."""

    session_id: str
    provider_type: str
    status: str
    handle: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    result: Optional[ProviderResult] = None
    cli_session_id: Optional[str] = None
    command: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "provider": self.provider_type,
            "status": self.status,
            "handle": self.handle,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "result": self.result.to_dict() if self.result else None,
            "cliSessionId": self.cli_session_id,
        }


@dataclass
class _TrackedSession:
    info: SessionInfo
    provider: AgentProvider
    provider_session: ProviderSession
    spec: SpawnSpec
    settled: asyncio.Event
    on_cli_session_id: Optional[CliSessionIdHook] = None

    def snapshot(self) -> SessionInfo:
        info = self.info
        return SessionInfo(
            session_id=info.session_id,
            provider_type=info.provider_type,
            status=info.status,
            handle=self.provider_session.handle,
            started_at=info.started_at,
            ended_at=info.ended_at,
            result=info.result,
            cli_session_id=info.cli_session_id,
            command=list(info.command),
        )


class AgentProcessRegistry:
    """Tracks spawned agent processes by session id."""

    def __init__(self):
        self._sessions: dict[str, _TrackedSession] = {}
        self._tasks: set[asyncio.Task] = set()
        # Guards check-and-insert on the session id space
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._sessions.values() if t.info.status == "running")

    def start(
        self,
        session_id: str,
        spec: SpawnSpec,
        provider: AgentProvider,
        on_cli_session_id: Optional[CliSessionIdHook] = None,
    ) -> SessionInfo:
        """Spawn an agent for ``session_id`` and track it as ``running``.

        A terminal entry with the same id is replaced, so a retry after the
        first attempt finished succeeds.

        Raises:
            SessionAlreadyRunningError: the id is tracked and not terminal.
        """
        user_callback = spec.on_chunk
        spec.on_chunk = _safe_chunk_callback(session_id, user_callback)

        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None and not is_terminal(existing.info.status):
                spec.on_chunk = user_callback
                raise SessionAlreadyRunningError(session_id)

            try:
                provider_session = provider.spawn(spec)
            except Exception:
                spec.on_chunk = user_callback
                raise
            tracked = _TrackedSession(
                info=SessionInfo(
                    session_id=session_id,
                    provider_type=provider.type,
                    status="running",
                    handle=provider_session.handle,
                    started_at=datetime.now(timezone.utc),
                    cli_session_id=provider_session.cli_session_id,
                    command=list(provider_session.command),
                ),
                provider=provider,
                provider_session=provider_session,
                spec=spec,
                settled=asyncio.Event(),
                on_cli_session_id=on_cli_session_id,
            )
            self._sessions[session_id] = tracked

        task = asyncio.get_running_loop().create_task(self._await_result(session_id, tracked))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info("Started %s session %s (%s)", provider.type, session_id, provider_session.handle)
        return tracked.snapshot()

    async def _await_result(self, session_id: str, tracked: _TrackedSession) -> None:
        try:
            result = await tracked.provider_session.result
        except asyncio.CancelledError:
            result = ProviderResult(success=False, error="Agent task was cancelled")
        except Exception as e:
            logger.exception("Provider %s failed for session %s", tracked.provider.type, session_id)
            result = ProviderResult(success=False, error=f"Provider error: {e}")

        cli_session_id = (
            result.cli_session_id or tracked.info.cli_session_id or tracked.spec.cli_session_id
        )

        with self._lock:
            target = terminal_status_for(result.success)
            if is_valid_transition(tracked.info.status, target):
                tracked.info.status = target
                tracked.info.result = result
                tracked.info.ended_at = datetime.now(timezone.utc)
            else:
                logger.debug(
                    "Discarding result for session %s: already %s", session_id, tracked.info.status
                )
            tracked.info.cli_session_id = cli_session_id

        tracked.settled.set()

        if cli_session_id and tracked.on_cli_session_id is not None:
            try:
                tracked.on_cli_session_id(session_id, cli_session_id)
            except Exception as e:
                logger.warning("cli_session_id hook failed for session %s: %s", session_id, e)

        logger.info("Session %s finished with status %s", session_id, tracked.info.status)

    def cancel(self, session_id: str) -> bool:
        """Kill a running session and mark it ``cancelled``.

        Returns False for unknown or already-terminal sessions.
        """
        with self._lock:
            tracked = self._sessions.get(session_id)
            if tracked is None or not is_valid_transition(tracked.info.status, "cancelled"):
                return False
            now = datetime.now(timezone.utc)
            tracked.info.status = "cancelled"
            tracked.info.ended_at = now
            tracked.info.result = ProviderResult(
                success=False,
                error=CANCELLED_BY_USER_ERROR,
                duration_ms=int((now - tracked.info.started_at).total_seconds() * 1000),
                cli_session_id=tracked.info.cli_session_id,
            )

        try:
            tracked.provider.cancel(tracked.provider_session)
        except Exception as e:
            logger.warning("Failed to kill process for session %s: %s", session_id, e)

        tracked.settled.set()
        logger.info("Cancelled session %s", session_id)
        return True

    def get_status(self, session_id: str) -> Optional[SessionInfo]:
        with self._lock:
            tracked = self._sessions.get(session_id)
            return tracked.snapshot() if tracked else None

    def list_active(self) -> list[SessionInfo]:
        """Sessions currently ``running``."""
        with self._lock:
            return [t.snapshot() for t in self._sessions.values() if t.info.status == "running"]

    def list_all(self) -> list[SessionInfo]:
        with self._lock:
            return [t.snapshot() for t in self._sessions.values()]

    def remove(self, session_id: str) -> bool:
        """Forget a terminal session. Active sessions cannot be removed."""
        with self._lock:
            tracked = self._sessions.get(session_id)
            if tracked is None or not is_terminal(tracked.info.status):
                return False
            del self._sessions[session_id]
            return True

    async def wait_until_settled(
        self,
        session_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[SessionInfo]:
        """Wait until ``session_id`` reaches a terminal status.

        Returns None for unknown ids. Raises ``asyncio.TimeoutError`` when
        ``timeout`` elapses first.
        """
        with self._lock:
            tracked = self._sessions.get(session_id)
        if tracked is None:
            return None
        await asyncio.wait_for(tracked.settled.wait(), timeout)
        return tracked.snapshot()

    async def shutdown(self) -> None:
        """Cancel every running session and wait for the processes to exit."""
        for info in self.list_active():
            self.cancel(info.session_id)

        with self._lock:
            pending = [t.provider_session.result for t in self._sessions.values()]
        pending.extend(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Process registry shut down")


def _safe_chunk_callback(
    session_id: str,
    callback: Optional[Callable[[ProviderChunk], None]],
) -> Optional[Callable[[ProviderChunk], None]]:
    if callback is None:
        return None

    def forward(chunk: ProviderChunk) -> None:
        try:
            callback(chunk)
        except Exception as e:
            logger.warning("Chunk callback failed for session %s: %s", session_id, e)

    return forward
