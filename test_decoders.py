"""
Output Decoder Tests
====================

Run with: pytest test_decoders.py
"""

import json

from providers.decoders import (
    ClaudeStreamDecoder,
    GeminiJsonDecoder,
    PlainTextDecoder,
    Questions,
    StatusUpdate,
    TextDelta,
    extract_cli_session_id,
    extract_result_text,
    find_session_id,
)


def _line(event: dict) -> str:
    return json.dumps(event)


def test_find_session_id_variants():
    assert find_session_id({"session_id": "a"}) == "a"
    assert find_session_id({"sessionId": " b "}) == "b"
    assert find_session_id({"session": {"id": "c"}}) == "c"
    assert find_session_id([{"x": 1}, {"session_id": "d"}]) == "d"
    assert find_session_id({"session_id": "  "}) is None
    assert find_session_id("session_id") is None


def test_extract_cli_session_id_from_ndjson():
    raw = "progress...\n" + _line({"type": "system"}) + "\n" + _line({"type": "init", "session_id": "abc"})
    assert extract_cli_session_id(raw) == "abc"
    assert extract_cli_session_id(_line({"sessionId": "whole"})) == "whole"
    assert extract_cli_session_id("") is None
    assert extract_cli_session_id("no json here") is None


def test_extract_result_text():
    assert extract_result_text("done") == "done"
    assert extract_result_text({"content": [
        {"type": "text", "text": "a"},
        {"type": "tool_use", "name": "Bash"},
        {"type": "text", "text": "b"},
    ]}) == "ab"
    assert extract_result_text(None) == ""


def test_plain_text_decoder():
    decoder = PlainTextDecoder()
    assert decoder.feed("hello") == [TextDelta("hello\n")]
    assert decoder.feed("") == []
    decoder.feed("world")
    assert decoder.output == "hello\nworld"
    assert decoder.cli_session_id is None


def test_claude_stream_text_deltas_and_session_id():
    decoder = ClaudeStreamDecoder()
    assert decoder.feed(_line({"type": "system", "subtype": "init", "session_id": "sess-42"})) == []
    events = decoder.feed(_line({
        "type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"},
    }))
    assert events == [TextDelta("Hel")]
    decoder.feed(_line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}}))

    # The final result repeats the text and must not be emitted again
    assert decoder.feed(_line({"type": "result", "result": "Hello"})) == []
    assert decoder.output == "Hello"
    assert decoder.cli_session_id == "sess-42"


def test_claude_stream_result_fallback():
    decoder = ClaudeStreamDecoder()
    events = decoder.feed(_line({"type": "result", "result": "Only result", "session_id": "s"}))
    assert events == [TextDelta("Only result")]
    assert decoder.output == "Only result"


def test_claude_stream_status_updates():
    decoder = ClaudeStreamDecoder()
    events = decoder.feed(_line({"type": "content_block_start", "content_block": {"type": "thinking"}}))
    assert events == [StatusUpdate("Thinking...")]
    events = decoder.feed(_line({
        "type": "content_block_start", "content_block": {"type": "tool_use", "name": "Bash"},
    }))
    assert events == [StatusUpdate("Thinking, using Bash...")]
    events = decoder.feed(_line({
        "type": "content_block_start", "content_block": {"type": "tool_use", "name": "Edit"},
    }))
    assert events == [StatusUpdate("Thinking, used 2 tools...")]


def test_claude_stream_questions():
    questions = [{"question": "Which database?", "options": ["sqlite", "postgres"]}]
    decoder = ClaudeStreamDecoder()
    events = decoder.feed(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "text", "text": "I need input"},
            {"type": "tool_use", "name": "AskUserQuestion", "input": {"questions": questions}},
        ]},
    }))
    assert events == [Questions(questions)]


def test_claude_stream_ignores_garbage():
    decoder = ClaudeStreamDecoder()
    assert decoder.feed("not json") == []
    assert decoder.feed("[1, 2]") == []
    assert decoder.feed("   ") == []
    assert decoder.output == ""


def test_gemini_single_document():
    decoder = GeminiJsonDecoder()
    document = {"session_id": "g-1", "response": "All done", "stats": {}}
    for line in json.dumps(document, indent=2).splitlines():
        assert decoder.feed(line) == []
    assert decoder.finish() == [TextDelta("All done")]
    assert decoder.output == "All done"
    assert decoder.cli_session_id == "g-1"


def test_gemini_falls_back_to_lines():
    decoder = GeminiJsonDecoder()
    decoder.feed("Loaded cached credentials.")
    decoder.feed(_line({"delta": {"text": "partial"}, "sessionId": "g-2"}))
    events = decoder.finish()
    assert decoder.output == "Loaded cached credentials.\npartial"
    assert events == [TextDelta(decoder.output)]
    assert decoder.cli_session_id == "g-2"


def test_gemini_empty_output():
    decoder = GeminiJsonDecoder()
    assert decoder.finish() == []
    assert decoder.output == ""
