"""Structured log entries parsed from agent output."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"
    USER = "user"
    RAW = "raw"


@dataclass(slots=True)
class LogEntry:
    """One logical log event: a one-line summary plus optional expanded detail."""

    timestamp: str
    skill: str
    summary: str
    detail: str = ""
    type: EventType = EventType.RAW
    complete: bool = True


_LINE_RE = re.compile(r"^\[(\d{2}:\d{2}:\d{2})(?:\s+(\S+))?\]\s*(.*)$")

HIDDEN_PREFIXES = ("RATE LIMITED: ",)


def first_line(text: str) -> str:
    return text.split("\n", 1)[0]


def truncate_line(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "…"


def new_log_entry(timestamp: str, skill: str, event_type: EventType, detail: str) -> LogEntry:
    """Build an entry whose summary is derived from ``event_type`` and ``detail``."""

    if event_type is EventType.TOOL_USE:
        summary = "Tool: " + detail
    elif event_type is EventType.TOOL_RESULT:
        if len(detail) > 200:
            summary = f"Result: ({len(detail)} chars)"
        else:
            summary = "Result: " + truncate_line(first_line(detail), 60)
    elif event_type is EventType.RESULT:
        summary = detail
    elif event_type is EventType.ERROR:
        summary = "ERROR: " + truncate_line(first_line(detail), 60)
    elif event_type is EventType.USER:
        summary = "User: " + truncate_line(first_line(detail), 70)
    else:
        summary = truncate_line(first_line(detail), 80)
    return LogEntry(timestamp=timestamp, skill=skill, summary=summary, detail=detail, type=event_type)


def parse_line(line: str) -> tuple[str, str, str]:
    """Split ``"[HH:MM:SS skill] message"`` into its parts.

    Lines that do not have that shape come back as ``("", "", line)``.
    """

    match = _LINE_RE.match(line)
    if match is None:
        return "", "", line
    return match.group(1), match.group(2) or "", match.group(3)


def line_to_entry(line: str) -> LogEntry | None:
    """Reconstruct an entry from a formatted ring-buffer line.

    Returns ``None`` for lines that are only meant for the raw view.
    """

    timestamp, skill, message = parse_line(line)
    if not timestamp:
        return LogEntry(timestamp="", skill="", summary=line, type=EventType.RAW)
    if message.startswith(HIDDEN_PREFIXES):
        return None
    if message.startswith("Tool: "):
        event_type = EventType.TOOL_USE
    elif message.startswith("Result: "):
        event_type = EventType.TOOL_RESULT
    elif message.startswith("ERROR: "):
        event_type = EventType.ERROR
    elif message.startswith("User: "):
        event_type = EventType.USER
    elif message.startswith("Completed"):
        event_type = EventType.RESULT
    else:
        event_type = EventType.TEXT
    return LogEntry(timestamp=timestamp, skill=skill, summary=message, type=event_type)


def _shorten_path(path: str) -> str:
    if not os.path.isabs(path):
        return path
    try:
        relative = os.path.relpath(path, os.getcwd())
    except ValueError:
        return path
    if relative.startswith(".."):
        return path
    return relative


def tool_field(tool_input: Any, name: str) -> str:
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except json.JSONDecodeError:
            return ""
    if isinstance(tool_input, dict):
        value = tool_input.get(name)
        if isinstance(value, str):
            return value
    return ""


def tool_use_summary(tool_name: str, tool_input: Any) -> str:
    """Readable one-liner for a tool invocation, with context for known tools."""

    if not tool_input:
        return tool_name
    if tool_name in {"Read", "Edit", "Write"}:
        path = tool_field(tool_input, "file_path")
        if path:
            return f"{tool_name} — {_shorten_path(path)}"
    elif tool_name in {"Glob", "Grep"}:
        pattern = tool_field(tool_input, "pattern")
        if pattern:
            return f"{tool_name} — {pattern}"
    elif tool_name == "Bash":
        command = tool_field(tool_input, "command")
        if command:
            return "Bash — " + truncate_line(first_line(command), 60)
    elif tool_name == "WebSearch":
        query = tool_field(tool_input, "query")
        if query:
            return "WebSearch — " + truncate_line(query, 60)
    elif tool_name == "WebFetch":
        url = tool_field(tool_input, "url")
        if url:
            return "WebFetch — " + truncate_line(url, 60)
    elif tool_name == "Task":
        description = tool_field(tool_input, "description")
        if description:
            return "Task — " + truncate_line(description, 60)
    elif tool_name in {"TodoWrite", "TaskCreate"}:
        subject = tool_field(tool_input, "subject")
        if subject:
            return f"{tool_name} — " + truncate_line(subject, 50)
    return tool_name


def format_json(text: str) -> str:
    """Pretty-print ``text`` with 2-space indentation when it is a JSON document."""

    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return stripped
    try:
        return json.dumps(json.loads(stripped), indent=2, ensure_ascii=False)
    except json.JSONDecodeError:
        return stripped


def _system_init_summary(payload: dict[str, Any]) -> str:
    parts = []
    if payload.get("claude_code_version"):
        parts.append("v" + str(payload["claude_code_version"]))
    if payload.get("model"):
        parts.append(str(payload["model"]))
    if payload.get("permissionMode"):
        parts.append(str(payload["permissionMode"]))
    tools = payload.get("tools")
    if isinstance(tools, list) and tools:
        parts.append(f"{len(tools)} tools")
    if parts:
        return "Session init — " + " · ".join(parts)
    return "[system/init]"


def interpret_raw_event(timestamp: str, skill: str, text: str) -> LogEntry:
    """Summarise JSON events the stream decoder does not model (``system`` etc.)."""

    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return new_log_entry(timestamp, skill, EventType.RAW, text)
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return new_log_entry(timestamp, skill, EventType.RAW, text)
    if not isinstance(payload, dict) or not payload.get("type"):
        return new_log_entry(timestamp, skill, EventType.RAW, text)

    event_type = str(payload["type"])
    subtype = str(payload.get("subtype") or "")
    if event_type == "system" and subtype == "init":
        summary = _system_init_summary(payload)
    elif event_type == "system":
        summary = f"[system/{subtype}]" if subtype else "[system]"
    else:
        summary = f"[{event_type}/{subtype}]" if subtype else f"[{event_type}]"
    return LogEntry(
        timestamp=timestamp,
        skill=skill,
        summary=summary,
        detail=format_json(stripped),
        type=EventType.RAW,
    )


__all__ = [
    "EventType",
    "LogEntry",
    "first_line",
    "format_json",
    "interpret_raw_event",
    "line_to_entry",
    "new_log_entry",
    "parse_line",
    "tool_field",
    "tool_use_summary",
    "truncate_line",
]
