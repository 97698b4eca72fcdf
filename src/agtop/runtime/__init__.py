"""Agent CLI runtimes."""

from .runner import (
    RUNTIME_CLAUDE,
    RUNTIME_OPENCODE,
    RUNTIMES,
    AgentNotFoundError,
    AgentRuntime,
    AgentRuntimeError,
    ExecutionResult,
    OpenCodeRuntime,
    RunOptions,
    select_runtime,
)
from .environment import sanitize_environment

__all__ = [
    "AgentNotFoundError",
    "AgentRuntime",
    "AgentRuntimeError",
    "ExecutionResult",
    "OpenCodeRuntime",
    "RUNTIMES",
    "RUNTIME_CLAUDE",
    "RUNTIME_OPENCODE",
    "RunOptions",
    "sanitize_environment",
    "select_runtime",
]
