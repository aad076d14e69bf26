"""
Agent Output Decoders
=====================

Each CLI backend writes its output in its own format. A decoder turns the
raw stdout lines of one backend into a small tagged union of events:

    TextDelta     incremental response text
    StatusUpdate  "Thinking...", "using Bash..." style activity hints
    Questions     clarifying questions the agent wants answered

and keeps track of the final response text and the backend's resumable
session id. Adding a backend means adding a decoder; the process registry
never looks at provider output itself.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: str = "text"


@dataclass(frozen=True)
class StatusUpdate:
    status: str
    kind: str = "status"


@dataclass(frozen=True)
class Questions:
    questions: list = field(default_factory=list)
    kind: str = "questions"


DecodedEvent = Union[TextDelta, StatusUpdate, Questions]


def _try_parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def find_session_id(value: Any) -> Optional[str]:
    """Look for ``session_id``, ``sessionId`` or ``session.id`` in parsed JSON."""
    if isinstance(value, list):
        for item in value:
            found = find_session_id(item)
            if found:
                return found
        return None
    if not isinstance(value, dict):
        return None

    for key in ("session_id", "sessionId"):
        candidate = value.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()

    session = value.get("session")
    if isinstance(session, dict):
        candidate = session.get("id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()

    return None


def extract_cli_session_id(raw: str) -> Optional[str]:
    """Find a session id in a JSON document or in NDJSON lines."""
    trimmed = raw.strip()
    if not trimmed:
        return None

    found = find_session_id(_try_parse_json(trimmed))
    if found:
        return found

    for line in trimmed.splitlines():
        candidate = line.strip()
        if not candidate.startswith(("{", "[")):
            continue
        found = find_session_id(_try_parse_json(candidate))
        if found:
            return found
    return None


def extract_result_text(result: Any) -> str:
    """Text of a ``result`` field: a string or ``{"content": [blocks]}``."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return "".join(
            block.get("text", "")
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


class OutputDecoder:
    """Base decoder: plain text, one line at a time."""

    def __init__(self):
        self.cli_session_id: Optional[str] = None
        self._parts: list[str] = []

    @property
    def output(self) -> str:
        return "".join(self._parts).strip()

    def feed(self, line: str) -> list[DecodedEvent]:
        if not line:
            return []
        text = line if line.endswith("\n") else line + "\n"
        self._parts.append(text)
        return [TextDelta(text)]

    def finish(self) -> list[DecodedEvent]:
        return []


class PlainTextDecoder(OutputDecoder):
    pass


# Stream events that carry no text
_SILENT_EVENTS = frozenset({"message_start", "message_stop", "message_delta", "system", "user"})


class ClaudeStreamDecoder(OutputDecoder):
    """Decoder for ``claude --output-format stream-json`` NDJSON.

    Text comes from ``content_block_delta``/``text_delta`` events. The final
    ``result`` event is used only if no delta was seen, so text is never
    emitted twice.
    """

    def __init__(self):
        super().__init__()
        self._thinking = False
        self._tools_used: list[str] = []
        self._saw_delta = False
        self._result_text = ""

    @property
    def output(self) -> str:
        if self._saw_delta:
            return "".join(self._parts).strip()
        return self._result_text.strip()

    def _format_status(self) -> str:
        parts = []
        if self._thinking:
            parts.append("Thinking")
        if len(self._tools_used) == 1:
            parts.append(f"using {self._tools_used[0]}")
        elif len(self._tools_used) > 1:
            parts.append(f"used {len(self._tools_used)} tools")
        return ", ".join(parts) + "..." if parts else "Thinking..."

    def feed(self, line: str) -> list[DecodedEvent]:
        line = line.strip()
        if not line:
            return []
        event = _try_parse_json(line)
        if not isinstance(event, dict):
            return []

        session_id = find_session_id(event)
        if session_id:
            self.cli_session_id = session_id

        event_type = event.get("type")

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "thinking":
                self._thinking = True
                return [StatusUpdate(self._format_status())]
            if block.get("type") == "tool_use":
                self._tools_used.append(block.get("name") or "tool")
                return [StatusUpdate(self._format_status())]
            return []

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._thinking = False
                self._saw_delta = True
                self._parts.append(delta["text"])
                return [TextDelta(delta["text"])]
            return []

        if event_type == "result":
            text = extract_result_text(event.get("result"))
            self._result_text = text
            if not self._saw_delta and text:
                return [TextDelta(text)]
            return []

        if event_type == "assistant":
            message = event.get("message") or {}
            content = message.get("content")
            events: list[DecodedEvent] = []
            if isinstance(content, list):
                for block in content:
                    if (
                        isinstance(block, dict)
                        and block.get("type") == "tool_use"
                        and block.get("name") == "AskUserQuestion"
                        and isinstance((block.get("input") or {}).get("questions"), list)
                    ):
                        events.append(Questions(block["input"]["questions"]))
            return events

        if event_type and event_type not in _SILENT_EVENTS and event_type != "content_block_stop":
            logger.debug("Unhandled claude stream event type: %s", event_type)
        return []


class GeminiJsonDecoder(OutputDecoder):
    """Decoder for ``gemini --output-format json``.

    The CLI prints one JSON document when it exits, so lines are buffered
    and decoded in ``finish()``. Non-JSON output falls back to plain text.
    """

    def __init__(self):
        super().__init__()
        self._lines: list[str] = []
        self._text = ""

    @property
    def output(self) -> str:
        return self._text.strip()

    def feed(self, line: str) -> list[DecodedEvent]:
        self._lines.append(line)
        return []

    def finish(self) -> list[DecodedEvent]:
        raw = "\n".join(self._lines).strip()
        if not raw:
            return []

        parsed = _try_parse_json(raw)
        if parsed is not None:
            self.cli_session_id = find_session_id(parsed)
            self._text = _gemini_text(parsed)
        else:
            self.cli_session_id = extract_cli_session_id(raw)
            self._text = _gemini_text_from_lines(raw)

        return [TextDelta(self._text)] if self._text else []


def _gemini_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_gemini_text(item) for item in value)
    if not isinstance(value, dict):
        return ""
    for key in ("response", "result", "output", "text", "content"):
        candidate = value.get(key)
        if isinstance(candidate, str):
            return candidate
        if isinstance(candidate, list):
            return "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in candidate
            )
    return ""


def _gemini_text_from_lines(raw: str) -> str:
    parts = []
    for line in raw.splitlines():
        parsed = _try_parse_json(line.strip())
        if parsed is None:
            parts.append(line)
            continue
        text = _gemini_text(parsed)
        if not text and isinstance(parsed, dict):
            delta = parsed.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                text = delta["text"]
        if text:
            parts.append(text)
    return "\n".join(parts)
