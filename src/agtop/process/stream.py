"""Decoder for the agent CLI's line-delimited ``stream-json`` output."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .entries import EventType

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "too many requests", "overloaded")


@dataclass(slots=True)
class UsageData:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class StreamEvent:
    type: EventType
    text: str = ""
    tool_name: str = ""
    tool_input: Any = None
    usage: UsageData | None = None
    is_error: bool = False


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(parts)
    return ""


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_stream_line(line: str) -> list[StreamEvent]:
    """Decode one output line into zero or more events.

    Blank lines produce nothing. Anything that is not a recognised JSON
    message comes back as a single ``raw`` event carrying the line.
    """

    if not line.strip():
        return []
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return [StreamEvent(type=EventType.RAW, text=line)]
    if not isinstance(message, dict):
        return [StreamEvent(type=EventType.RAW, text=line)]

    kind = message.get("type")
    if kind in {"assistant", "user"}:
        body = message.get("message") or {}
        content = body.get("content") if isinstance(body, dict) else None
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        if not isinstance(content, list):
            return [StreamEvent(type=EventType.RAW, text=line)]
        events: list[StreamEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text_type = EventType.TEXT if kind == "assistant" else EventType.USER
                events.append(StreamEvent(type=text_type, text=str(block.get("text", ""))))
            elif block_type == "tool_use":
                events.append(
                    StreamEvent(
                        type=EventType.TOOL_USE,
                        tool_name=str(block.get("name", "")),
                        tool_input=block.get("input"),
                    )
                )
            elif block_type == "tool_result":
                events.append(
                    StreamEvent(
                        type=EventType.TOOL_RESULT,
                        text=_tool_result_text(block.get("content", block.get("text"))),
                        is_error=bool(block.get("is_error")),
                    )
                )
        return events

    if kind == "result":
        event = StreamEvent(
            type=EventType.RESULT,
            text=str(message.get("result") or ""),
            is_error=bool(message.get("is_error")),
        )
        usage = message.get("usage")
        if isinstance(usage, dict) or "total_cost_usd" in message:
            usage = usage if isinstance(usage, dict) else {}
            event.usage = UsageData(
                input_tokens=_int(usage.get("input_tokens")),
                output_tokens=_int(usage.get("output_tokens")),
                cost_usd=float(message.get("total_cost_usd") or 0.0),
            )
        return [event]

    return [StreamEvent(type=EventType.RAW, text=line)]


_OPENCODE_TYPES = {"text", "reasoning", "tool_use", "step_start", "step_finish", "error"}


def parse_opencode_line(line: str) -> list[StreamEvent]:
    """Decode one line of ``opencode run --format json`` output.

    Messages without an OpenCode event type go through the stream-json
    decoder, so mixed output still decodes.
    """

    if not line.strip():
        return []
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return [StreamEvent(type=EventType.RAW, text=line)]
    if not isinstance(message, dict):
        return [StreamEvent(type=EventType.RAW, text=line)]

    kind = message.get("type")
    if kind not in _OPENCODE_TYPES:
        return parse_stream_line(line)

    part = message.get("part")
    part = part if isinstance(part, dict) else {}

    if kind in {"text", "reasoning"}:
        text = part.get("text") or part.get("content") or ""
        return [StreamEvent(type=EventType.TEXT, text=str(text))]

    if kind == "tool_use":
        state = part.get("state")
        state = state if isinstance(state, dict) else {}
        events = [
            StreamEvent(
                type=EventType.TOOL_USE,
                tool_name=str(part.get("tool", "")),
                tool_input=state.get("input"),
            )
        ]
        if state.get("status") == "completed":
            output = state.get("output")
            events.append(StreamEvent(type=EventType.TOOL_RESULT, text=output if isinstance(output, str) else ""))
        return events

    if kind == "step_start":
        return []

    if kind == "step_finish":
        event = StreamEvent(type=EventType.RESULT)
        tokens = part.get("tokens")
        if isinstance(tokens, dict):
            event.usage = UsageData(
                input_tokens=_int(tokens.get("input")),
                output_tokens=_int(tokens.get("output")),
                cost_usd=float(part.get("cost") or 0.0),
            )
        return [event]

    error = message.get("error")
    error = error if isinstance(error, dict) else {}
    data = error.get("data")
    text = data.get("message") if isinstance(data, dict) else None
    return [StreamEvent(type=EventType.ERROR, text=str(text or error.get("name") or ""), is_error=True)]


_DECODERS = {
    "stream-json": parse_stream_line,
    "opencode-json": parse_opencode_line,
}


def decoder_for(stream_format: str):
    """Return the line decoder for a runtime's ``stream_format``."""

    try:
        return _DECODERS[stream_format]
    except KeyError:
        raise ValueError(f"unknown stream format {stream_format!r}") from None


def is_rate_limit(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


def check_limits(tokens: int, cost: float, *, max_tokens: int, max_cost: float) -> tuple[bool, str]:
    """Return whether a run crossed its budget; a zero threshold disables that check."""

    if max_cost > 0 and cost >= max_cost:
        return True, f"cost threshold exceeded (${cost:.2f} >= ${max_cost:.2f})"
    if max_tokens > 0 and tokens >= max_tokens:
        return True, f"token threshold exceeded ({tokens} >= {max_tokens})"
    return False, ""


def review_passed(text: str) -> bool:
    """Whether a review skill's final result reports ``{"success": true}``."""

    stripped = text.strip()
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start < 0 or end <= start:
        return False
    try:
        payload = json.loads(stripped[start : end + 1])
    except json.JSONDecodeError:
        return False
    return isinstance(payload, dict) and payload.get("success") is True


__all__ = [
    "StreamEvent",
    "UsageData",
    "check_limits",
    "decoder_for",
    "is_rate_limit",
    "parse_opencode_line",
    "parse_stream_line",
    "review_passed",
]
