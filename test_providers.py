"""
Provider Tests
==============

Command lines for each backend, the provider factory, and the subprocess
runner driven by a real (Python) child process.

Run with: pytest test_providers.py
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from providers import PROVIDER_CLASSES, get_provider
from providers.base import (
    CANCELLED_ERROR,
    CliAgentProvider,
    SpawnSpec,
    build_subprocess_env,
    format_command,
)
from providers.claude_code import ClaudeCodeProvider
from providers.codex import CodexProvider
from providers.decoders import ClaudeStreamDecoder, OutputDecoder
from providers.gemini_cli import GeminiCliProvider


def _spec(**overrides) -> SpawnSpec:
    values = {"prompt": "Build it", "cwd": "/repo"}
    values.update(overrides)
    return SpawnSpec(**values)


# ----------------------------------------------------------------------------
# Argument building
# ----------------------------------------------------------------------------

def test_claude_new_session_args():
    args = ClaudeCodeProvider().build_args(_spec(cli_session_id="abc", model="opus", allowed_tools=["Read"]))
    assert args[:5] == ["--permission-mode", "bypassPermissions", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--session-id") + 1] == "abc"
    assert "--resume" not in args
    assert args[args.index("-p") + 1] == "Build it"
    assert "--print" in args
    assert args[args.index("--model") + 1] == "opus"
    assert args[-2:] == ["--allowedTools", "Read"]


def test_claude_resume_and_plan_mode():
    args = ClaudeCodeProvider().build_args(_spec(mode="plan", cli_session_id="abc", resume=True))
    assert args[1] == "plan"
    assert args[args.index("--resume") + 1] == "abc"
    assert "--session-id" not in args


def test_claude_analyze_mode_default_tools():
    args = ClaudeCodeProvider().build_args(_spec(mode="analyze"))
    assert args[args.index("--allowedTools") + 1:] == ["Read", "Glob", "Grep", "Write"]


def test_claude_generates_session_id():
    provider = ClaudeCodeProvider()
    generated = provider.resolve_cli_session_id(_spec())
    assert generated and len(generated) == 36
    assert provider.resolve_cli_session_id(_spec(cli_session_id="given")) == "given"


def test_codex_args_per_mode():
    provider = CodexProvider()
    out = Path("/tmp/out.txt")
    args = provider.build_args(_spec(model="gpt-5"), out)
    assert args[:2] == ["exec", "--dangerously-bypass-approvals-and-sandbox"]
    assert args[args.index("-C") + 1] == "/repo"
    assert "--skip-git-repo-check" in args
    assert args[args.index("-o") + 1] == str(out)
    assert args[args.index("--color") + 1] == "never"
    assert args[args.index("-m") + 1] == "gpt-5"
    assert args[-1] == "Build it"

    assert provider.build_args(_spec(mode="analyze"))[1:3] == ["-s", "workspace-write"]
    assert provider.build_args(_spec(mode="plan"))[1:3] == ["-s", "read-only"]
    assert not provider.supports_resume
    assert provider.resolve_cli_session_id(_spec(cli_session_id="x")) is None


def test_gemini_args():
    provider = GeminiCliProvider()
    args = provider.build_args(_spec(cli_session_id="g1", resume=True, model="gemini-2.5-pro"))
    assert args[:2] == ["--resume", "g1"]
    assert args[args.index("-p") + 1] == "Build it"
    assert args[args.index("--output-format") + 1] == "json"
    assert "-y" in args
    assert args[-2:] == ["-m", "gemini-2.5-pro"]

    plan_args = provider.build_args(_spec(mode="plan", cli_session_id="g1"))
    assert "--resume" not in plan_args
    assert "-y" not in plan_args


def test_get_provider_factory():
    assert isinstance(get_provider("codex"), CodexProvider)
    assert isinstance(get_provider("gemini-cli"), GeminiCliProvider)
    assert isinstance(get_provider(None), ClaudeCodeProvider)
    assert isinstance(get_provider("unknown-agent"), ClaudeCodeProvider)
    assert get_provider("codex", 1.5).kill_grace_seconds == 1.5
    assert set(PROVIDER_CLASSES) == {"claude-code", "codex", "gemini-cli"}


def test_format_command_truncates_arguments():
    command = format_command("claude", ["-p", "x" * 250])
    assert command.startswith("claude -p ")
    assert "x" * 100 + "..." in command
    assert "x" * 101 not in command


def test_build_subprocess_env(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_BASE_URL", "  ")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    env = build_subprocess_env()
    assert "ANTHROPIC_BASE_URL" not in env
    assert env["OPENAI_API_KEY"] == "sk-test"
    assert env["NO_COLOR"] == "1"


# ----------------------------------------------------------------------------
# Subprocess runner
# ----------------------------------------------------------------------------

class ScriptProvider(CliAgentProvider):
    """Runs a Python snippet in place of an agent CLI."""

    type = "claude-code"
    binary = sys.executable
    display_name = "Script"
    supports_resume = True

    def __init__(self, script: str, kill_grace_seconds: float = 1.0):
        super().__init__(kill_grace_seconds)
        self.script = script

    def build_args(self, spec: SpawnSpec, output_file: Optional[Path] = None) -> list[str]:
        return ["-c", self.script]

    def create_decoder(self) -> OutputDecoder:
        return ClaudeStreamDecoder()


STREAM_SCRIPT = """
import json
print(json.dumps({"type": "system", "session_id": "from-cli"}))
print(json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hello"}}))
print(json.dumps({"type": "result", "result": "hello"}))
"""


def test_runner_success(tmp_path):
    chunks = []

    async def run():
        provider = ScriptProvider(STREAM_SCRIPT)
        session = provider.spawn(SpawnSpec(prompt="x", cwd=str(tmp_path), on_chunk=chunks.append))
        return await session.result

    result = asyncio.run(run())
    assert result.success
    assert result.output == "hello"
    assert result.cli_session_id == "from-cli"
    assert result.duration_ms >= 0
    assert [c.stream_type for c in chunks].count("raw") == 3
    assert [c.text for c in chunks if c.stream_type == "response"] == ["hello"]


def test_runner_nonzero_exit_with_stderr(tmp_path):
    script = "import sys; sys.stderr.write('rate limited\\n'); sys.exit(2)"

    async def run():
        session = ScriptProvider(script).spawn(SpawnSpec(prompt="x", cwd=str(tmp_path)))
        return await session.result

    result = asyncio.run(run())
    assert not result.success
    assert result.error == "rate limited"


def test_runner_nonzero_exit_without_stderr(tmp_path):
    async def run():
        session = ScriptProvider("import sys; sys.exit(3)").spawn(SpawnSpec(prompt="x", cwd=str(tmp_path)))
        return await session.result

    result = asyncio.run(run())
    assert not result.success
    assert result.error == "Script CLI exited with code 3"


def test_runner_missing_binary(tmp_path):
    class MissingProvider(ScriptProvider):
        binary = "definitely-not-an-agent-cli"
        display_name = "Missing"

    async def run():
        provider = MissingProvider("")
        available = await provider.is_available()
        session = provider.spawn(SpawnSpec(prompt="x", cwd=str(tmp_path)))
        return available, await session.result

    available, result = asyncio.run(run())
    assert not available
    assert not result.success
    assert result.error == (
        "Missing CLI not found. Ensure `definitely-not-an-agent-cli` is installed and available in PATH."
    )


def test_runner_kill(tmp_path):
    script = "import json, time; print(json.dumps({'session_id': 'k'}), flush=True); time.sleep(60)"

    async def run():
        provider = ScriptProvider(script)
        session = provider.spawn(SpawnSpec(prompt="x", cwd=str(tmp_path)))
        for _ in range(200):
            if session.handle.startswith("pid:"):
                break
            await asyncio.sleep(0.05)
        assert provider.cancel(session)
        result = await asyncio.wait_for(session.result, timeout=30)
        return provider, session, result

    provider, session, result = asyncio.run(run())
    assert not result.success
    assert result.error == CANCELLED_ERROR
    assert not provider.cancel(session)


def test_runner_emits_questions_as_json(tmp_path):
    questions = [{"question": "Proceed?"}]
    event = {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "AskUserQuestion", "input": {"questions": questions}}]},
    }
    script = f"print({json.dumps(json.dumps(event))})"
    chunks = []

    async def run():
        session = ScriptProvider(script).spawn(SpawnSpec(prompt="x", cwd=str(tmp_path), on_chunk=chunks.append))
        return await session.result

    asyncio.run(run())
    question_chunks = [c for c in chunks if c.chunk_key == "questions"]
    assert len(question_chunks) == 1
    assert json.loads(question_chunks[0].text) == questions
