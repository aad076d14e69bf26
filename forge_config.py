"""
BuildForge Configuration
========================

Central place for runtime settings and on-disk locations.

Settings come from the process environment (optionally populated from a
``.env`` file by the server entry point) using the ``BUILDFORGE_`` prefix:

    BUILDFORGE_DATA_DIR            Directory holding the database and session logs
    BUILDFORGE_DEFAULT_PROVIDER    claude-code | codex | gemini-cli
    BUILDFORGE_DEFAULT_MODEL       Model override passed to every provider
    BUILDFORGE_KILL_GRACE_SECONDS  Seconds between SIGTERM and SIGKILL
    BUILDFORGE_ALLOW_REMOTE        1/true/yes to accept non-localhost clients
    BUILDFORGE_HOST / _PORT        Bind address for ``python -m server.main``
    BUILDFORGE_LOG_LEVEL           Root log level (default INFO)

Layout of the data directory::

    <data_dir>/
        buildforge.db
        sessions/<session_id>/logs.ndjson
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DATABASE_FILENAME = "buildforge.db"
SESSIONS_DIRNAME = "sessions"
SESSION_LOG_FILENAME = "logs.ndjson"

VALID_PROVIDERS = ["claude-code", "codex", "gemini-cli"]
DEFAULT_PROVIDER = "claude-code"

# SIGTERM -> SIGKILL grace period for agent processes
DEFAULT_KILL_GRACE_SECONDS = 5.0

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8899

# Tools granted to build sessions
BUILD_ALLOWED_TOOLS = ["Edit", "Write", "Bash", "Read", "Glob", "Grep"]
TEAM_BUILD_ALLOWED_TOOLS = BUILD_ALLOWED_TOOLS + ["Task"]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("Ignoring negative %s=%r, using %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def get_default_data_dir() -> Path:
    """Return ``~/.buildforge`` unless BUILDFORGE_DATA_DIR overrides it."""
    override = os.environ.get("BUILDFORGE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".buildforge"


def get_database_path(data_dir: Path) -> Path:
    return data_dir / DATABASE_FILENAME


def get_session_log_path(data_dir: Path, session_id: str) -> Path:
    return data_dir / SESSIONS_DIRNAME / session_id / SESSION_LOG_FILENAME


@dataclass
class ForgeSettings:
    """Resolved runtime settings. Build with ``load_settings()``."""

    data_dir: Path
    default_provider: str = DEFAULT_PROVIDER
    default_model: str | None = None
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    allow_remote: bool = False
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    build_allowed_tools: list[str] = field(default_factory=lambda: list(BUILD_ALLOWED_TOOLS))

    @property
    def database_path(self) -> Path:
        return get_database_path(self.data_dir)

    def session_log_path(self, session_id: str) -> Path:
        return get_session_log_path(self.data_dir, session_id)


def load_settings() -> ForgeSettings:
    """Read settings from the environment."""
    provider = os.environ.get("BUILDFORGE_DEFAULT_PROVIDER", "").strip() or DEFAULT_PROVIDER
    if provider not in VALID_PROVIDERS:
        logger.warning(
            "Unknown BUILDFORGE_DEFAULT_PROVIDER=%r, falling back to %s", provider, DEFAULT_PROVIDER
        )
        provider = DEFAULT_PROVIDER

    model = os.environ.get("BUILDFORGE_DEFAULT_MODEL", "").strip() or None

    return ForgeSettings(
        data_dir=get_default_data_dir(),
        default_provider=provider,
        default_model=model,
        kill_grace_seconds=_env_float("BUILDFORGE_KILL_GRACE_SECONDS", DEFAULT_KILL_GRACE_SECONDS),
        allow_remote=_env_flag("BUILDFORGE_ALLOW_REMOTE"),
        host=os.environ.get("BUILDFORGE_HOST", "").strip() or DEFAULT_HOST,
        port=_env_int("BUILDFORGE_PORT", DEFAULT_PORT),
        log_level=(os.environ.get("BUILDFORGE_LOG_LEVEL", "").strip() or "INFO").upper(),
    )
