"""Agent subprocess supervision and output capture."""

from .buffers import EntryBuffer, RingBuffer, RunOutput
from .entries import EventType, LogEntry, line_to_entry, new_log_entry, parse_line
from .logfiles import LogFiles, log_paths, read_log_lines
from .stream import (
    StreamEvent,
    UsageData,
    check_limits,
    decoder_for,
    is_rate_limit,
    parse_opencode_line,
    parse_stream_line,
)
from .supervisor import (
    ConcurrencyLimitError,
    RunAlreadyActiveError,
    Supervisor,
    SupervisorError,
)

__all__ = [
    "ConcurrencyLimitError",
    "EntryBuffer",
    "EventType",
    "LogEntry",
    "LogFiles",
    "RingBuffer",
    "RunAlreadyActiveError",
    "RunOutput",
    "StreamEvent",
    "Supervisor",
    "SupervisorError",
    "UsageData",
    "check_limits",
    "decoder_for",
    "is_rate_limit",
    "line_to_entry",
    "log_paths",
    "new_log_entry",
    "parse_line",
    "parse_opencode_line",
    "parse_stream_line",
    "read_log_lines",
]
