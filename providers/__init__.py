"""
Agent Providers
===============

Pluggable backends for external coding-agent CLIs.
"""

import logging

from forge_config import DEFAULT_KILL_GRACE_SECONDS, DEFAULT_PROVIDER
from providers.base import (
    AgentProvider,
    ProviderChunk,
    ProviderResult,
    ProviderSession,
    SpawnSpec,
)
from providers.claude_code import ClaudeCodeProvider
from providers.codex import CodexProvider
from providers.gemini_cli import GeminiCliProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type] = {
    "claude-code": ClaudeCodeProvider,
    "codex": CodexProvider,
    "gemini-cli": GeminiCliProvider,
}


def get_provider(
    provider_type: str | None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> AgentProvider:
    """Instantiate a provider; unknown types fall back to Claude Code."""
    cls = PROVIDER_CLASSES.get(provider_type or DEFAULT_PROVIDER)
    if cls is None:
        logger.warning("Unknown provider %r, falling back to %s", provider_type, DEFAULT_PROVIDER)
        cls = PROVIDER_CLASSES[DEFAULT_PROVIDER]
    return cls(kill_grace_seconds=kill_grace_seconds)


__all__ = [
    "AgentProvider",
    "ClaudeCodeProvider",
    "CodexProvider",
    "GeminiCliProvider",
    "PROVIDER_CLASSES",
    "ProviderChunk",
    "ProviderResult",
    "ProviderSession",
    "SpawnSpec",
    "get_provider",
]
