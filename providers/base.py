"""
Agent Provider Interface
========================

A provider knows how to run one external coding-agent CLI. ``spawn()``
starts the agent as an asyncio task and immediately returns a
``ProviderSession`` holding:

- ``handle``: identifier for logs (becomes ``pid:<n>`` once the process exists)
- ``result``: an awaitable task resolving to a ``ProviderResult``
- ``kill``: two-stage termination (SIGTERM, then SIGKILL after a grace period)

Process failures never raise out of ``result``: a missing binary, a
non-zero exit or a kill all resolve to ``ProviderResult(success=False)``.
"""

import asyncio
import json
import logging
import os
import shlex
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Optional

from env_constants import API_ENV_VARS
from forge_config import DEFAULT_KILL_GRACE_SECONDS
from providers.decoders import OutputDecoder, Questions, StatusUpdate, TextDelta
from server.utils.process_utils import kill_process_tree

logger = logging.getLogger(__name__)

ProviderType = Literal["claude-code", "codex", "gemini-cli"]
AgentMode = Literal["plan", "code", "analyze"]
ChunkStreamType = Literal["raw", "response", "output"]

CANCELLED_ERROR = "Process was cancelled."

# Agent CLIs can emit very long single JSON lines
_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class ProviderChunk:
    stream_type: ChunkStreamType
    text: str
    chunk_key: Optional[str] = None
    emitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


ChunkCallback = Callable[[ProviderChunk], None]


@dataclass
class SpawnSpec:
    """Everything a provider needs to start one agent run."""

    prompt: str
    cwd: str
    mode: AgentMode = "code"
    model: Optional[str] = None
    allowed_tools: Optional[list[str]] = None
    # Resumption token: continued when ``resume`` is set, otherwise used to
    # name the new CLI session where the backend allows it
    cli_session_id: Optional[str] = None
    resume: bool = False
    on_chunk: Optional[ChunkCallback] = None
    log_identifier: Optional[str] = None


@dataclass
class ProviderResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    cli_session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "durationMs": self.duration_ms,
            "cliSessionId": self.cli_session_id,
        }


@dataclass
class ProviderSession:
    handle: str
    result: "asyncio.Future[ProviderResult]"
    kill: Callable[[], None]
    command: list[str] = field(default_factory=list)
    cli_session_id: Optional[str] = None


def format_command(binary: str, args: list[str], max_arg_length: int = 100) -> str:
    """Loggable command line with each argument truncated."""
    shown = [a if len(a) <= max_arg_length else a[:max_arg_length] + "..." for a in args]
    return " ".join(shlex.quote(part) for part in [binary, *shown])


def build_subprocess_env() -> dict[str, str]:
    """Environment for agent CLIs.

    Inherits the server environment. Blank API overrides are dropped so an
    empty ``ANTHROPIC_BASE_URL=`` in ``.env`` does not break the CLI.
    """
    env = dict(os.environ)
    for name in API_ENV_VARS:
        if name in env and not env[name].strip():
            del env[name]
    env["NO_COLOR"] = "1"
    return env


class AgentProvider(ABC):
    """Interface every agent backend implements."""

    type: ProviderType
    supports_resume: bool = False

    @abstractmethod
    def spawn(self, spec: SpawnSpec) -> ProviderSession:
        """Start an agent run. Must be called with a running event loop."""

    def cancel(self, session: ProviderSession) -> bool:
        """Kill a running session. Returns False if it already finished."""
        if session.result.done():
            return False
        session.kill()
        return True

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the backend can be used on this machine."""


class CliAgentProvider(AgentProvider):
    """Provider that runs a CLI binary and decodes its stdout.

    Subclasses supply the binary, the argument list and a decoder.
    """

    binary: str
    display_name: str
    # Backend writes its final message to a file given on the command line
    uses_output_file: bool = False

    def __init__(self, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS):
        self.kill_grace_seconds = kill_grace_seconds

    @abstractmethod
    def build_args(self, spec: SpawnSpec, output_file: Optional[Path] = None) -> list[str]:
        ...

    @abstractmethod
    def create_decoder(self) -> OutputDecoder:
        ...

    def resolve_cli_session_id(self, spec: SpawnSpec) -> Optional[str]:
        """Resumption token known before the process starts, if any."""
        return spec.cli_session_id if self.supports_resume else None

    async def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def not_found_error(self) -> str:
        return (
            f"{self.display_name} CLI not found. "
            f"Ensure `{self.binary}` is installed and available in PATH."
        )

    def spawn(self, spec: SpawnSpec) -> ProviderSession:
        if spec.resume and not self.supports_resume:
            logger.warning("%s does not support resume; starting a new session", self.type)
            spec.resume = False

        output_file: Optional[Path] = None
        if self.uses_output_file:
            fd, name = tempfile.mkstemp(prefix=f"{self.binary}-out-", suffix=".txt")
            os.close(fd)
            output_file = Path(name)

        cli_session_id = self.resolve_cli_session_id(spec)
        if cli_session_id and not spec.resume:
            spec.cli_session_id = cli_session_id

        args = self.build_args(spec, output_file)
        logger.info("Spawning %s", format_command(self.binary, args))
        logger.info("Working directory: %s", spec.cwd)

        state = _RunState()
        loop = asyncio.get_running_loop()
        session = ProviderSession(
            handle=spec.log_identifier or self.binary,
            result=None,  # type: ignore[arg-type]
            kill=lambda: None,
            command=[self.binary, *args],
            cli_session_id=cli_session_id,
        )

        def kill() -> None:
            if state.killed:
                return
            state.killed = True
            proc = state.process
            if proc is None or proc.returncode is not None:
                return
            logger.info("Killing %s process %d", self.type, proc.pid)
            loop.run_in_executor(None, kill_process_tree, proc.pid, self.kill_grace_seconds)

        session.kill = kill
        session.result = loop.create_task(self._run(spec, args, output_file, state, session))
        return session

    async def _run(
        self,
        spec: SpawnSpec,
        args: list[str],
        output_file: Optional[Path],
        state: "_RunState",
        session: ProviderSession,
    ) -> ProviderResult:
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.binary,
                    *args,
                    cwd=spec.cwd,
                    env=build_subprocess_env(),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=_STREAM_LIMIT,
                )
            except FileNotFoundError:
                return ProviderResult(success=False, error=self.not_found_error(), duration_ms=elapsed())
            except OSError as e:
                return ProviderResult(
                    success=False,
                    error=f"Failed to spawn {self.display_name} CLI: {e}",
                    duration_ms=elapsed(),
                )

            state.process = proc
            session.handle = f"pid:{proc.pid}"
            if state.killed:
                # kill() arrived before the process existed
                asyncio.get_running_loop().run_in_executor(
                    None, kill_process_tree, proc.pid, self.kill_grace_seconds
                )

            decoder = self.create_decoder()
            stderr_parts: list[str] = []
            await asyncio.gather(
                self._read_stdout(proc.stdout, decoder, spec),
                self._read_stderr(proc.stderr, stderr_parts, spec),
            )
            for event in decoder.finish():
                self._emit_event(spec, event)
            returncode = await proc.wait()

            stderr = "".join(stderr_parts).strip()
            logger.info(
                "%s exited with code %s after %dms", self.type, returncode, elapsed()
            )
            if stderr:
                logger.debug("%s stderr: %s", self.type, stderr[:500])

            output = decoder.output
            if output_file is not None:
                file_output = _read_text(output_file)
                if file_output:
                    output = file_output
            cli_session_id = decoder.cli_session_id or session.cli_session_id

            if state.killed:
                return ProviderResult(
                    success=False,
                    error=CANCELLED_ERROR,
                    output=output or None,
                    duration_ms=elapsed(),
                    cli_session_id=cli_session_id,
                )

            if returncode != 0:
                return ProviderResult(
                    success=False,
                    error=stderr or f"{self.display_name} CLI exited with code {returncode}",
                    output=output or None,
                    duration_ms=elapsed(),
                    cli_session_id=cli_session_id,
                )

            return ProviderResult(
                success=True,
                output=output,
                duration_ms=elapsed(),
                cli_session_id=cli_session_id,
            )
        finally:
            if output_file is not None:
                try:
                    output_file.unlink()
                except FileNotFoundError:
                    pass

    async def _read_stdout(self, stream, decoder: OutputDecoder, spec: SpawnSpec) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            self._emit(spec, ProviderChunk("raw", line + "\n"))
            for event in decoder.feed(line):
                self._emit_event(spec, event)

    async def _read_stderr(self, stream, parts: list[str], spec: SpawnSpec) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace")
            parts.append(text)
            self._emit(spec, ProviderChunk("output", text, chunk_key="stderr"))

    def _emit_event(self, spec: SpawnSpec, event) -> None:
        if isinstance(event, TextDelta):
            self._emit(spec, ProviderChunk("response", event.text))
        elif isinstance(event, StatusUpdate):
            self._emit(spec, ProviderChunk("output", event.status, chunk_key="status"))
        elif isinstance(event, Questions):
            self._emit(spec, ProviderChunk("output", json.dumps(event.questions), chunk_key="questions"))

    @staticmethod
    def _emit(spec: SpawnSpec, chunk: ProviderChunk) -> None:
        if spec.on_chunk is not None:
            spec.on_chunk(chunk)


@dataclass
class _RunState:
    process: Optional[asyncio.subprocess.Process] = None
    killed: bool = False


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
