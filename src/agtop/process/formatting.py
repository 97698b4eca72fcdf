"""Turning decoded stream events into ring-buffer lines and entries."""

from __future__ import annotations

import json
from dataclasses import dataclass

from .entries import (
    EventType,
    LogEntry,
    first_line,
    format_json,
    interpret_raw_event,
    new_log_entry,
    tool_use_summary,
)
from .stream import StreamEvent, is_rate_limit


@dataclass(slots=True)
class FormattedLine:
    line: str
    entry: LogEntry | None


def line_prefix(timestamp: str, skill: str) -> str:
    return f"[{timestamp} {skill}]" if skill else f"[{timestamp}]"


def completion_summary(event: StreamEvent) -> str:
    if event.usage is None:
        return "Completed"
    return f"Completed — {event.usage.total_tokens} tokens, ${event.usage.cost_usd:.4f}"


def _split(prefix: str, label: str, text: str) -> list[str]:
    lines = text.split("\n") if text else [""]
    head = f"{prefix} {label}{lines[0]}".rstrip()
    return [head, *lines[1:]]


def format_event(event: StreamEvent, timestamp: str, skill: str) -> list[FormattedLine]:
    """Render ``event`` as ring-buffer lines; the first line carries the entry.

    Continuation lines of multi-line text are returned without an entry.
    """

    prefix = line_prefix(timestamp, skill)

    if event.type is EventType.TOOL_USE:
        tool_input = event.tool_input
        detail = format_json(json.dumps(tool_input)) if isinstance(tool_input, (dict, list)) else str(tool_input or "")
        entry = new_log_entry(timestamp, skill, EventType.TOOL_USE, tool_use_summary(event.tool_name, tool_input))
        entry.detail = detail
        return [FormattedLine(f"{prefix} Tool: {event.tool_name}", entry)]

    if event.type is EventType.RESULT:
        if event.is_error:
            text = event.text or "agent reported an error"
            entry = new_log_entry(timestamp, skill, EventType.ERROR, text)
            return [FormattedLine(f"{prefix} ERROR: {first_line(text)}", entry)]
        summary = completion_summary(event)
        entry = new_log_entry(timestamp, skill, EventType.RESULT, summary)
        if event.text:
            entry.detail = event.text
        return [FormattedLine(f"{prefix} {summary}", entry)]

    if event.type is EventType.ERROR:
        if is_rate_limit(event.text):
            return [FormattedLine(f"{prefix} RATE LIMITED: {event.text}", None)]
        entry = new_log_entry(timestamp, skill, EventType.ERROR, event.text)
        return [FormattedLine(f"{prefix} ERROR: {first_line(event.text)}", entry)]

    if event.type is EventType.RAW:
        entry = interpret_raw_event(timestamp, skill, event.text)
        return [FormattedLine(f"{prefix} {event.text}", entry)]

    labels = {
        EventType.TEXT: "",
        EventType.TOOL_RESULT: "Result: ",
        EventType.USER: "User: ",
    }
    label = labels.get(event.type, "")
    lines = _split(prefix, label, event.text)
    entry = new_log_entry(timestamp, skill, event.type, event.text)
    formatted = [FormattedLine(lines[0], entry)]
    formatted.extend(FormattedLine(line, None) for line in lines[1:])
    return formatted


def stderr_event(text: str) -> StreamEvent:
    return StreamEvent(type=EventType.ERROR, text=text)


__all__ = ["FormattedLine", "completion_summary", "format_event", "line_prefix", "stderr_event"]
