"""Locating, invoking and spawning the agent CLI."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

from .environment import sanitize_environment

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024

RUNTIME_CLAUDE = "claude"
RUNTIME_OPENCODE = "opencode"


class AgentRuntimeError(RuntimeError):
    """Base class for agent runtime errors."""


class AgentNotFoundError(AgentRuntimeError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class RunOptions:
    """Per-invocation settings rendered into the agent's argv."""

    model: str | None = None
    max_turns: int = 0
    allowed_tools: Sequence[str] = field(default_factory=tuple)
    permission_mode: str | None = None
    agent: str | None = None
    workdir: Path | None = None
    env: Mapping[str, str] | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of a short, fully-buffered agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentRuntime:
    """Runs Claude Code (``claude``) in headless stream-json mode.

    Subclasses swap the argv and name the output format they emit through
    ``stream_format``; spawning and signalling are shared.
    """

    name = RUNTIME_CLAUDE
    default_command = "claude"
    stream_format = "stream-json"

    def __init__(self, executable: Path | None = None, *, command: str | None = None) -> None:
        self._command = command or self.default_command
        self._executable_path = self._resolve_executable(executable, self._command)

    @staticmethod
    def _resolve_executable(explicit: Path | None, command: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"agent executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise AgentNotFoundError(f"{command} executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(self, prompt: str, options: RunOptions | None = None) -> list[str]:
        options = options or RunOptions()
        args = ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        if options.model:
            args += ["--model", options.model]
        if options.max_turns > 0:
            args += ["--max-turns", str(options.max_turns)]
        if options.allowed_tools:
            args += ["--allowedTools", ",".join(options.allowed_tools)]
        if options.permission_mode:
            args += ["--permission-mode", options.permission_mode]
        return args

    def command_line(self, prompt: str, options: RunOptions | None = None) -> list[str]:
        return [str(self._executable_path), *self.build_args(prompt, options)]

    async def start(self, prompt: str, options: RunOptions | None = None) -> asyncio.subprocess.Process:
        """Spawn the agent in its own process group with piped output.

        ``OSError`` from the spawn propagates to the caller.
        """

        options = options or RunOptions()
        return await asyncio.create_subprocess_exec(
            *self.command_line(prompt, options),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(options.workdir) if options.workdir else None,
            env=sanitize_environment(options.env),
            start_new_session=True,
            limit=STREAM_LIMIT,
        )

    async def version(self) -> ExecutionResult:
        cmd = [str(self._executable_path), "--version"]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        return ExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class OpenCodeRuntime(AgentRuntime):
    """Runs OpenCode (``opencode run``) with line-delimited JSON output.

    OpenCode has no turn limit, tool allow-list or permission flag on the
    command line; those come from ``opencode.json``.
    """

    name = RUNTIME_OPENCODE
    default_command = "opencode"
    stream_format = "opencode-json"

    def build_args(self, prompt: str, options: RunOptions | None = None) -> list[str]:
        options = options or RunOptions()
        args = ["run", prompt, "--format", "json"]
        if options.model:
            args += ["--model", options.model]
        if options.agent:
            args += ["--agent", options.agent]
        return args


RUNTIMES: dict[str, type[AgentRuntime]] = {
    RUNTIME_CLAUDE: AgentRuntime,
    RUNTIME_OPENCODE: OpenCodeRuntime,
}


def select_runtime(preferred: str = RUNTIME_CLAUDE, commands: Mapping[str, str] | None = None) -> AgentRuntime:
    """Build the preferred runtime, falling back to the other when its CLI is missing.

    ``commands`` maps runtime names to executable names or paths. Raises
    ``AgentNotFoundError`` naming both failures when neither CLI is found.
    """

    if preferred not in RUNTIMES:
        raise AgentRuntimeError(f"unknown runtime {preferred!r}; expected one of {', '.join(RUNTIMES)}")
    commands = commands or {}
    fallback = RUNTIME_OPENCODE if preferred == RUNTIME_CLAUDE else RUNTIME_CLAUDE

    try:
        return RUNTIMES[preferred](command=commands.get(preferred))
    except AgentNotFoundError as exc:
        first_error = exc
    logger.warning(
        "Preferred agent runtime unavailable, falling back",
        extra={"runtime": preferred, "fallback": fallback, "error": str(first_error)},
    )
    try:
        return RUNTIMES[fallback](command=commands.get(fallback))
    except AgentNotFoundError as exc:
        raise AgentNotFoundError(
            f"no runtime available: {preferred} ({first_error}), {fallback} ({exc})"
        ) from exc


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
    "STREAM_LIMIT",
    "select_runtime",
]
