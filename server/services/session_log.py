"""
Session Log Writer
==================

Append-only NDJSON log per agent session, one JSON object per line:

    {"seq": 0, "type": "session_start", "ts": "...", ...}
    {"seq": 1, "type": "chunk", "streamType": "response", "text": "..."}
    {"seq": 2, "type": "session_end", "status": "completed", ...}

Sequence numbers are monotonic per writer. Chunk text is redacted with
``sanitize_output`` before it reaches disk.
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from providers.base import ProviderChunk

logger = logging.getLogger(__name__)

# Patterns for sensitive data that should be redacted from output
SENSITIVE_PATTERNS = [
    r'sk-ant-[a-zA-Z0-9_-]{20,}',  # Anthropic API keys
    r'sk-[a-zA-Z0-9_-]{20,}',  # OpenAI style keys
    r'AIza[0-9A-Za-z_-]{35}',  # Google API keys
    r'(ANTHROPIC|OPENAI|GEMINI|GOOGLE)_API_KEY=[^\s]+',
    r'api[_-]?key[=:][^\s]+',
    r'token[=:][^\s]+',
    r'password[=:][^\s]+',
    r'secret[=:][^\s]+',
    r'gh[pousr]_[a-zA-Z0-9]{36,}',  # GitHub tokens
    r'aws[_-]?access[_-]?key[=:][^\s]+',
    r'aws[_-]?secret[=:][^\s]+',
]

_SENSITIVE_RE = [re.compile(p, re.IGNORECASE) for p in SENSITIVE_PATTERNS]


def sanitize_output(text: str) -> str:
    """Remove sensitive information from agent output."""
    for pattern in _SENSITIVE_RE:
        text = pattern.sub('[REDACTED]', text)
    return text


class SessionLogWriter:
    """Writes one session's NDJSON log. Safe to call from several threads."""

    def __init__(self, path: Path):
        self.path = path
        self._seq = 0
        self._lock = threading.Lock()
        self._closed = False

    def _write(self, event_type: str, data: dict[str, Any]) -> None:
        with self._lock:
            if self._closed:
                return
            record = {
                "seq": self._seq,
                "type": event_type,
                "ts": datetime.now(timezone.utc).isoformat(),
                **data,
            }
            self._seq += 1
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
            except OSError as e:
                logger.warning("Failed to write session log %s: %s", self.path, e)

    def session_start(
        self,
        session_id: str,
        provider: str,
        command: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> None:
        self._write("session_start", {
            "sessionId": session_id,
            "provider": provider,
            "command": command,
            "prompt": sanitize_output(prompt) if prompt else None,
        })

    def chunk(self, chunk: ProviderChunk) -> None:
        self._write("chunk", {
            "streamType": chunk.stream_type,
            "chunkKey": chunk.chunk_key,
            "emittedAt": chunk.emitted_at,
            "text": sanitize_output(chunk.text),
        })

    def session_end(self, status: str, error: Optional[str] = None, duration_ms: Optional[int] = None) -> None:
        self._write("session_end", {"status": status, "error": error, "durationMs": duration_ms})
        with self._lock:
            self._closed = True


def read_session_log(path: Path, after_seq: int = -1) -> list[dict]:
    """Events of a session log with ``seq > after_seq``; malformed lines are skipped."""
    if not path.exists():
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict) and event.get("seq", -1) > after_seq:
                events.append(event)
    return events
