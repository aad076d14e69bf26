"""
Codex Provider
==============

Runs ``codex exec``. Codex runs are single-shot: there is no resumption
token, and the final agent message is captured through ``-o <file>``
because stdout interleaves progress output with the answer.
"""

from pathlib import Path
from typing import Optional

from providers.base import CliAgentProvider, SpawnSpec
from providers.decoders import OutputDecoder, PlainTextDecoder

# Agent mode -> sandbox flags
_SANDBOX_ARGS = {
    "code": ["--dangerously-bypass-approvals-and-sandbox"],
    "analyze": ["-s", "workspace-write"],
    "plan": ["-s", "read-only"],
}


class CodexProvider(CliAgentProvider):
    type = "codex"
    binary = "codex"
    display_name = "Codex"
    supports_resume = False
    uses_output_file = True

    def create_decoder(self) -> OutputDecoder:
        return PlainTextDecoder()

    def build_args(self, spec: SpawnSpec, output_file: Optional[Path] = None) -> list[str]:
        args = ["exec", *_SANDBOX_ARGS.get(spec.mode, _SANDBOX_ARGS["plan"])]
        args += ["-C", spec.cwd, "--skip-git-repo-check"]
        if output_file is not None:
            args += ["-o", str(output_file)]
        args += ["--color", "never"]
        if spec.model:
            args += ["-m", spec.model]
        args.append(spec.prompt)
        return args
