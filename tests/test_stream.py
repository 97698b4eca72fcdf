from __future__ import annotations

import json

import pytest

from agtop.process.entries import EventType
from agtop.process.formatting import format_event, line_prefix, stderr_event
from agtop.process.stream import (
    StreamEvent,
    UsageData,
    check_limits,
    decoder_for,
    is_rate_limit,
    parse_opencode_line,
    parse_stream_line,
    review_passed,
)


def assistant(*blocks) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(blocks)}})


def test_parse_assistant_blocks() -> None:
    line = assistant(
        {"type": "text", "text": "Let me look."},
        {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
    )

    events = parse_stream_line(line)

    assert [event.type for event in events] == [EventType.TEXT, EventType.TOOL_USE]
    assert events[0].text == "Let me look."
    assert events[1].tool_name == "Bash"
    assert events[1].tool_input == {"command": "ls"}


def test_parse_user_tool_result() -> None:
    line = json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "content": [{"type": "text", "text": "file.txt"}], "is_error": True}
                ]
            },
        }
    )

    (event,) = parse_stream_line(line)

    assert event.type is EventType.TOOL_RESULT
    assert event.text == "file.txt"
    assert event.is_error


def test_parse_result_with_usage() -> None:
    line = json.dumps(
        {
            "type": "result",
            "subtype": "success",
            "result": "All done",
            "usage": {"input_tokens": 1200, "output_tokens": 300},
            "total_cost_usd": 0.0421,
        }
    )

    (event,) = parse_stream_line(line)

    assert event.type is EventType.RESULT
    assert event.text == "All done"
    assert event.usage == UsageData(input_tokens=1200, output_tokens=300, cost_usd=0.0421)
    assert event.usage.total_tokens == 1500
    assert not event.is_error


@pytest.mark.parametrize("line", ["plain output", "[1, 2]", '{"type": "system", "subtype": "init"}'])
def test_unrecognised_lines_become_raw(line: str) -> None:
    (event,) = parse_stream_line(line)

    assert event.type is EventType.RAW
    assert event.text == line


def test_blank_line_yields_nothing() -> None:
    assert parse_stream_line("   ") == []


def opencode(kind: str, **fields) -> str:
    return json.dumps({"type": kind, **fields})


@pytest.mark.parametrize("kind", ["text", "reasoning"])
def test_opencode_text_parts(kind: str) -> None:
    (event,) = parse_opencode_line(opencode(kind, part={"text": "Reading the tests"}))

    assert event.type is EventType.TEXT
    assert event.text == "Reading the tests"
    assert parse_opencode_line(opencode("text", part={"content": "fallback"}))[0].text == "fallback"


def test_opencode_completed_tool_use_also_yields_result() -> None:
    line = opencode(
        "tool_use",
        part={"tool": "bash", "state": {"status": "completed", "input": {"command": "ls"}, "output": "file.txt"}},
    )

    use, result = parse_opencode_line(line)

    assert use.type is EventType.TOOL_USE
    assert use.tool_name == "bash"
    assert use.tool_input == {"command": "ls"}
    assert result.type is EventType.TOOL_RESULT
    assert result.text == "file.txt"


def test_opencode_pending_tool_use() -> None:
    line = opencode("tool_use", part={"tool": "read", "state": {"status": "running", "input": {"path": "a.py"}}})

    (event,) = parse_opencode_line(line)

    assert event.type is EventType.TOOL_USE
    assert event.tool_name == "read"


def test_opencode_step_events() -> None:
    assert parse_opencode_line(opencode("step_start", part={})) == []

    finished = opencode(
        "step_finish",
        part={"tokens": {"input": 800, "output": 200, "total": 1000}, "cost": 0.015},
    )
    (event,) = parse_opencode_line(finished)
    assert event.type is EventType.RESULT
    assert event.usage == UsageData(input_tokens=800, output_tokens=200, cost_usd=0.015)
    assert event.usage.total_tokens == 1000

    (bare,) = parse_opencode_line(opencode("step_finish", part={}))
    assert bare.type is EventType.RESULT
    assert bare.usage is None


def test_opencode_errors() -> None:
    (event,) = parse_opencode_line(opencode("error", error={"name": "APIError", "data": {"message": "quota exhausted"}}))
    assert event.type is EventType.ERROR
    assert event.text == "quota exhausted"
    assert event.is_error

    (named,) = parse_opencode_line(opencode("error", error={"name": "ProviderAuthError"}))
    assert named.text == "ProviderAuthError"


def test_opencode_falls_back_to_stream_json() -> None:
    line = assistant({"type": "text", "text": "hello"})

    assert parse_opencode_line(line) == parse_stream_line(line)


@pytest.mark.parametrize("line", ["plain output", "[1, 2]", "{broken"])
def test_opencode_unrecognised_lines_become_raw(line: str) -> None:
    (event,) = parse_opencode_line(line)

    assert event.type is EventType.RAW
    assert event.text == line


def test_decoder_for() -> None:
    assert decoder_for("stream-json") is parse_stream_line
    assert decoder_for("opencode-json") is parse_opencode_line
    with pytest.raises(ValueError):
        decoder_for("xml")


def test_rate_limit_detection() -> None:
    assert is_rate_limit("API Error: 429 Too Many Requests")
    assert is_rate_limit("Overloaded, retrying")
    assert not is_rate_limit("syntax error")


def test_check_limits() -> None:
    assert check_limits(100, 1.0, max_tokens=1000, max_cost=5.0) == (False, "")
    assert check_limits(100, 5.0, max_tokens=1000, max_cost=5.0) == (
        True,
        "cost threshold exceeded ($5.00 >= $5.00)",
    )
    assert check_limits(2000, 0.1, max_tokens=1000, max_cost=5.0) == (
        True,
        "token threshold exceeded (2000 >= 1000)",
    )
    assert check_limits(10**9, 10**6, max_tokens=0, max_cost=0) == (False, "")


def test_review_passed() -> None:
    assert review_passed('Looks good.\n{"success": true}')
    assert not review_passed('{"success": false, "issues": ["tests fail"]}')
    assert not review_passed('{"success": "yes"}')
    assert not review_passed("no verdict")


def test_format_multiline_text_only_first_line_has_entry() -> None:
    formatted = format_event(StreamEvent(type=EventType.TEXT, text="first\nsecond"), "10:00:00", "build")

    assert [item.line for item in formatted] == ["[10:00:00 build] first", "second"]
    assert formatted[0].entry is not None
    assert formatted[0].entry.detail == "first\nsecond"
    assert formatted[1].entry is None


def test_format_tool_use() -> None:
    event = StreamEvent(type=EventType.TOOL_USE, tool_name="Bash", tool_input={"command": "ls -la"})

    (formatted,) = format_event(event, "10:00:00", "build")

    assert formatted.line == "[10:00:00 build] Tool: Bash"
    assert formatted.entry.summary == "Tool: Bash — ls -la"
    assert json.loads(formatted.entry.detail) == {"command": "ls -la"}


def test_format_result_and_errors() -> None:
    result = StreamEvent(
        type=EventType.RESULT, text="done", usage=UsageData(input_tokens=100, output_tokens=50, cost_usd=0.0123)
    )
    (completed,) = format_event(result, "10:00:00", "test")
    assert completed.line == "[10:00:00 test] Completed — 150 tokens, $0.0123"
    assert completed.entry.type is EventType.RESULT
    assert completed.entry.detail == "done"

    failed = StreamEvent(type=EventType.RESULT, text="max turns reached", is_error=True)
    (error,) = format_event(failed, "10:00:00", "test")
    assert error.line == "[10:00:00 test] ERROR: max turns reached"
    assert error.entry.type is EventType.ERROR

    (limited,) = format_event(stderr_event("429 rate limit"), "10:00:00", "test")
    assert limited.line.startswith("[10:00:00 test] RATE LIMITED:")
    assert limited.entry is None


def test_line_prefix_without_skill() -> None:
    assert line_prefix("10:00:00", "") == "[10:00:00]"
