"""
Gemini CLI Provider
===================

Runs ``gemini -p`` with ``--output-format json``: the CLI prints a single
JSON document on exit, which carries the response and the session id used
for ``--resume``.
"""

from pathlib import Path
from typing import Optional

from providers.base import CliAgentProvider, SpawnSpec
from providers.decoders import GeminiJsonDecoder, OutputDecoder


class GeminiCliProvider(CliAgentProvider):
    type = "gemini-cli"
    binary = "gemini"
    display_name = "Gemini"
    supports_resume = True

    def create_decoder(self) -> OutputDecoder:
        return GeminiJsonDecoder()

    def build_args(self, spec: SpawnSpec, output_file: Optional[Path] = None) -> list[str]:
        args: list[str] = []
        if spec.resume and spec.cli_session_id:
            args += ["--resume", spec.cli_session_id]
        args += ["-p", spec.prompt, "--output-format", "json"]
        # Auto-approve tool calls in code mode
        if spec.mode == "code":
            args.append("-y")
        if spec.model:
            args += ["-m", spec.model]
        return args
