"""
Claude Code Provider
====================

Runs ``claude --print`` with ``--output-format stream-json``. Sessions are
resumable: a new run is named with ``--session-id`` so it can later be
continued with ``--resume``.
"""

import uuid
from pathlib import Path
from typing import Optional

from providers.base import CliAgentProvider, SpawnSpec
from providers.decoders import ClaudeStreamDecoder, OutputDecoder

# Tools for analyze mode when the caller does not pass a list
ANALYZE_ALLOWED_TOOLS = ["Read", "Glob", "Grep", "Write"]


class ClaudeCodeProvider(CliAgentProvider):
    type = "claude-code"
    binary = "claude"
    display_name = "Claude"
    supports_resume = True

    def resolve_cli_session_id(self, spec: SpawnSpec) -> Optional[str]:
        return spec.cli_session_id or str(uuid.uuid4())

    def create_decoder(self) -> OutputDecoder:
        return ClaudeStreamDecoder()

    def build_args(self, spec: SpawnSpec, output_file: Optional[Path] = None) -> list[str]:
        permission_mode = "plan" if spec.mode == "plan" else "bypassPermissions"

        allowed_tools = spec.allowed_tools
        if spec.mode == "analyze" and not allowed_tools:
            allowed_tools = ANALYZE_ALLOWED_TOOLS

        args = [
            "--permission-mode", permission_mode,
            "--output-format", "stream-json",
            "--verbose",
        ]

        if spec.cli_session_id and spec.resume:
            args += ["--resume", spec.cli_session_id]
        elif spec.cli_session_id:
            args += ["--session-id", spec.cli_session_id]

        args += ["--print", "-p", spec.prompt]

        if spec.model:
            args += ["--model", spec.model]
        if allowed_tools:
            args += ["--allowedTools", *allowed_tools]

        return args
