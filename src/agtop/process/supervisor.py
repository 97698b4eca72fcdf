"""Process supervisor: owns agent subprocesses and streams their output."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from ..config import AgtopSettings
from ..run.models import Run, RunState, utcnow
from ..run.persistence import MAX_LOG_TAIL, Persistence, PersistenceError, is_process_alive
from ..run.store import RunChange, RunNotFoundError, RunStore
from ..runtime import AgentRuntime, RunOptions
from ..safety import HookEngine
from ..workflows import (
    FOLLOW_UP_SKILL,
    WorkflowSpec,
    render_follow_up_prompt,
    render_skill_prompt,
)
from ..worktree import WorktreeError, WorktreeManager
from .buffers import RunOutput
from .entries import EventType, LogEntry, tool_field
from .formatting import format_event, line_prefix, stderr_event
from .logfiles import LogFiles, log_paths, read_log_lines
from .stream import StreamEvent, check_limits, decoder_for, review_passed

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class SupervisorError(RuntimeError):
    """Raised when a supervisor operation is not valid for the run's current state."""


class ConcurrencyLimitError(SupervisorError):
    """Raised when starting a run would exceed the concurrent run limit."""


class RunAlreadyActiveError(SupervisorError):
    """Raised when a run already has a live subprocess."""


@dataclass(slots=True)
class StepResult:
    returncode: int | None
    result_text: str = ""
    is_error: bool = False
    last_text: str = ""


@dataclass
class _RunHandle:
    run_id: str
    output: RunOutput
    log_files: LogFiles | None = None
    process: asyncio.subprocess.Process | None = None
    driver: asyncio.Task | None = None
    readers: list[asyncio.Task] = field(default_factory=list)
    cancelled: bool = False
    unpaused: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.unpaused.set()

    @property
    def active(self) -> bool:
        return self.driver is not None and not self.driver.done()

    @property
    def process_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


PromptBuilder = Callable[[str, int, str], str]


class Supervisor:
    """Starts, signals and reaps agent subprocesses, one process per active run.

    Each run is driven by one asyncio task that executes the workflow's skills
    in order. Every process gets one reader task per output stream; readers
    write into the run's ``RunOutput`` and never outlive their process.
    """

    def __init__(
        self,
        store: RunStore,
        runtime: AgentRuntime,
        worktrees: WorktreeManager,
        *,
        settings: AgtopSettings | None = None,
        persistence: Persistence | None = None,
        hooks: HookEngine | None = None,
        on_output: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._worktrees = worktrees
        self._settings = settings or AgtopSettings()
        self._persistence = persistence
        self._hooks = hooks
        self._on_output = on_output
        self._clock = clock or utcnow
        self._handles: dict[str, _RunHandle] = {}
        self._outputs: dict[str, RunOutput] = {}
        store.subscribe(self._on_store_change)

    def _on_store_change(self, change: RunChange) -> None:
        if change.removed and not self.is_active(change.run_id):
            self.forget(change.run_id)

    def output(self, run_id: str) -> RunOutput:
        """The run's output buffers, created empty on first access."""

        output = self._outputs.get(run_id)
        if output is None:
            output = RunOutput(
                self._settings.ring_buffer_capacity, self._settings.entry_buffer_capacity
            )
            self._outputs[run_id] = output
        return output

    def lines(self, run_id: str) -> list[str]:
        return self.output(run_id).ring.lines()

    def entries(self, run_id: str) -> list[LogEntry]:
        return self.output(run_id).entries.entries()

    def log_tail(self, run_id: str) -> list[str]:
        output = self._outputs.get(run_id)
        return output.ring.tail(MAX_LOG_TAIL) if output is not None else []

    def log_file_paths(self, run_id: str) -> tuple[str, str]:
        handle = self._handles.get(run_id)
        if handle is not None and handle.log_files is not None:
            return str(handle.log_files.stdout_path), str(handle.log_files.stderr_path)
        stdout_path, stderr_path = log_paths(self._sessions_dir(), run_id)
        if stdout_path.exists() and stderr_path.exists():
            return str(stdout_path), str(stderr_path)
        return "", ""

    def forget(self, run_id: str) -> None:
        """Drop the buffers of a run that is no longer tracked."""

        handle = self._handles.get(run_id)
        if handle is not None and handle.active:
            raise RunAlreadyActiveError(f"run {run_id} is still active")
        self._handles.pop(run_id, None)
        self._outputs.pop(run_id, None)

    def inject_buffer(self, run_id: str, lines: Iterable[str]) -> None:
        """Restore previously formatted lines, e.g. a saved session's log tail."""

        output = self.output(run_id)
        for line in lines:
            output.append_line(line)

    def replay_log_files(self, run_id: str, stdout_path: str, stderr_path: str) -> None:
        """Rebuild a run's buffers from its raw log files."""

        run = self._store.get(run_id)
        stamp = (run.started_at or run.created_at) if run is not None else self._clock()
        timestamp = stamp.astimezone().strftime("%H:%M:%S")
        skill = run.current_skill if run is not None else ""
        output = self.output(run_id)
        decode = decoder_for(self._runtime.stream_format)
        for raw in read_log_lines(stdout_path):
            for event in decode(raw):
                for formatted in format_event(event, timestamp, skill):
                    output.append(formatted.line, formatted.entry)
        for raw in read_log_lines(stderr_path):
            if raw.strip():
                for formatted in format_event(stderr_event(raw), timestamp, skill):
                    output.append(formatted.line, formatted.entry)

    def active_count(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.active)

    def is_active(self, run_id: str) -> bool:
        handle = self._handles.get(run_id)
        return handle is not None and handle.active

    def pid(self, run_id: str) -> int:
        handle = self._handles.get(run_id)
        if handle is None or not handle.process_alive:
            return 0
        return handle.process.pid

    async def start(self, run_id: str, workflow: WorkflowSpec) -> Run:
        """Spawn the first skill of ``workflow`` for a queued run.

        Returns the run snapshot after the spawn. Spawn and worktree failures
        do not raise: the run is left ``failed`` with ``error`` set.
        """

        run = self._store.require(run_id)
        if self.is_active(run_id):
            raise RunAlreadyActiveError(f"run {run_id} is already active")
        if run.state is not RunState.QUEUED:
            raise SupervisorError(f"run {run_id} is {run.state.value}, only queued runs can start")
        self._check_capacity()

        handle = _RunHandle(run_id=run_id, output=self.output(run_id))
        self._handles[run_id] = handle

        try:
            run = await self._ensure_worktree(run)
        except WorktreeError as exc:
            return self._fail_start(handle, f"worktree: {exc}")
        if handle.cancelled:
            return await self._abandon_start(handle)

        initial = RunState.ROUTING if workflow.route else RunState.RUNNING
        model = workflow.model or self._settings.agent_model or ""

        def _begin(target: Run) -> None:
            target.workflow = workflow.name
            target.skill_total = len(workflow.skills)
            target.skill_index = 0
            target.model = model
            target.started_at = self._clock()
            target.error = ""

        self._store.update(run_id, _begin)
        handle.log_files = self._open_log_files(run_id)

        blocked = self._blocked_patterns()

        def _prompt(skill: str, index: int, previous: str) -> str:
            current = self._store.require(run_id)
            return render_skill_prompt(
                workflow, skill, current, blocked_patterns=blocked, previous_output=previous
            )

        options = self._options_for(workflow)
        first = workflow.skills[0]
        process = await self._spawn(handle, first, 0, _prompt(first, 0, ""), options)
        if process is None:
            return self._store.require(run_id)
        if handle.cancelled:
            return await self._abandon_start(handle)
        self._store.update_state(run_id, initial)

        handle.driver = asyncio.create_task(
            self._drive(handle, workflow.skills, _prompt, options, process, review=workflow.ends_with_review),
            name=f"agtop-run-{run_id}",
        )
        return self._store.require(run_id)

    async def follow_up(self, run_id: str, prompt: str, workflow: WorkflowSpec | None = None) -> Run:
        """Relaunch the agent in a reviewed run's worktree with an extra instruction."""

        run = self._store.require(run_id)
        if self.is_active(run_id):
            raise RunAlreadyActiveError(f"run {run_id} is already active")
        if run.state is not RunState.REVIEWING:
            raise SupervisorError(f"run {run_id} is {run.state.value}, follow-ups need a run under review")
        if not prompt.strip():
            raise SupervisorError("follow-up prompt must not be empty")
        self._check_capacity()

        handle = _RunHandle(run_id=run_id, output=self.output(run_id))
        self._handles[run_id] = handle

        try:
            run = await self._ensure_worktree(run)
        except WorktreeError as exc:
            return self._fail_start(handle, f"worktree: {exc}")
        if handle.cancelled:
            return await self._abandon_start(handle)

        def _begin(target: Run) -> None:
            target.follow_up_prompts.append(prompt)
            target.transition(RunState.RUNNING)
            target.completed_at = None
            target.error = ""
            target.skill_index = 0
            target.skill_total = 1

        self._store.update(run_id, _begin)
        handle.log_files = self._open_log_files(run_id)
        blocked = self._blocked_patterns()

        def _prompt(skill: str, index: int, previous: str) -> str:
            return render_follow_up_prompt(self._store.require(run_id), prompt, blocked_patterns=blocked)

        options = self._options_for(workflow)
        process = await self._spawn(handle, FOLLOW_UP_SKILL, 0, _prompt(FOLLOW_UP_SKILL, 0, ""), options)
        if process is None:
            return self._store.require(run_id)
        if handle.cancelled:
            return await self._abandon_start(handle)
        handle.driver = asyncio.create_task(
            self._drive(handle, [FOLLOW_UP_SKILL], _prompt, options, process, review=False),
            name=f"agtop-followup-{run_id}",
        )
        return self._store.require(run_id)

    def pause(self, run_id: str) -> bool:
        """Stop a running run's process group; no-op unless the run is running."""

        run = self._store.require(run_id)
        handle = self._handles.get(run_id)
        if run.state is not RunState.RUNNING or handle is None or not handle.active:
            return False
        if handle.process_alive:
            self._signal(handle, signal.SIGSTOP)
        handle.unpaused.clear()
        self._store.update_state(run_id, RunState.PAUSED)
        self._log_notice(handle, "Paused")
        return True

    def resume(self, run_id: str) -> bool:
        """Continue a paused run; no-op unless the run is paused."""

        run = self._store.require(run_id)
        handle = self._handles.get(run_id)
        if run.state is not RunState.PAUSED:
            return False
        if handle is not None and handle.process_alive:
            self._signal(handle, signal.SIGCONT)
        if handle is not None:
            handle.unpaused.set()
        self._store.update_state(run_id, RunState.RUNNING)
        if handle is not None:
            self._log_notice(handle, "Resumed")
        return True

    async def cancel(self, run_id: str) -> bool:
        """Terminate a run's process and finish it as rejected or failed.

        The process group gets SIGTERM, then SIGKILL once the grace period
        lapses. A run that produced output ends ``rejected``; one that did not
        ends ``failed``. The worktree is left in place.
        """

        run = self._store.require(run_id)
        if run.is_terminal():
            return False
        handle = self._handles.get(run_id)
        if handle is not None:
            handle.cancelled = True
            handle.unpaused.set()
            await self._terminate(handle)
            if handle.driver is not None:
                await asyncio.gather(handle.driver, return_exceptions=True)
        elif run.pid > 0:
            await self._terminate_pid(run.pid)

        output = self._outputs.get(run_id)
        produced = output is not None and output.has_output
        final = RunState.REJECTED if produced else RunState.FAILED

        def _finish(target: Run) -> None:
            target.transition(final)
            if final is RunState.FAILED:
                target.error = CANCELLED_ERROR
            target.pid = 0
            target.completed_at = self._clock()

        self._store.update(run_id, _finish)
        self._close_log_files(handle)
        self._persist(run_id)
        logger.info("Cancelled run", extra={"run_id": run_id, "state": final.value})
        return True

    async def wait(self, run_id: str) -> Run:
        """Wait for the run's current driver task, then return its snapshot."""

        handle = self._handles.get(run_id)
        if handle is not None and handle.driver is not None:
            await asyncio.gather(handle.driver, return_exceptions=True)
        return self._store.require(run_id)

    def accept(self, run_id: str) -> bool:
        return self._review_decision(run_id, RunState.ACCEPTED)

    def reject(self, run_id: str) -> bool:
        return self._review_decision(run_id, RunState.REJECTED)

    async def shutdown(self) -> None:
        """Cancel every active run."""

        for run_id in [run_id for run_id, handle in self._handles.items() if handle.active]:
            try:
                await self.cancel(run_id)
            except RunNotFoundError:
                continue

    def _review_decision(self, run_id: str, target: RunState) -> bool:
        run = self._store.require(run_id)
        if run.state is not RunState.REVIEWING:
            raise SupervisorError(f"run {run_id} is {run.state.value}, not under review")
        if self.is_active(run_id):
            raise RunAlreadyActiveError(f"run {run_id} is still active")
        self._store.update_state(run_id, target)
        self._persist(run_id)
        return True

    def _check_capacity(self) -> None:
        limit = self._settings.max_concurrent_runs
        if limit and self.active_count() >= limit:
            raise ConcurrencyLimitError(f"concurrent run limit reached ({limit})")

    def _blocked_patterns(self) -> list[str]:
        if self._hooks is not None:
            return self._hooks.matcher.patterns()
        return list(self._settings.blocked_patterns)

    def _options_for(self, workflow: WorkflowSpec | None) -> RunOptions:
        settings = self._settings
        if workflow is None:
            return RunOptions(
                model=settings.agent_model,
                max_turns=settings.max_turns,
                permission_mode=settings.permission_mode,
                agent=settings.opencode_agent,
            )
        return RunOptions(
            model=workflow.model or settings.agent_model,
            max_turns=workflow.max_turns or settings.max_turns,
            allowed_tools=tuple(workflow.allowed_tools),
            permission_mode=workflow.permission_mode or settings.permission_mode,
            agent=settings.opencode_agent,
        )

    def _sessions_dir(self) -> Path:
        if self._persistence is not None:
            return self._persistence.sessions_dir
        return self._settings.resolved_state_dir()

    async def _ensure_worktree(self, run: Run) -> Run:
        if run.worktree and Path(run.worktree).is_dir():
            return run
        if self._worktrees.exists(run.id):
            path = str(self._worktrees.path_for(run.id))
            branch = run.branch
        else:
            record = await asyncio.to_thread(self._worktrees.create, run.id, run.branch or None)
            path, branch = record.path, record.branch or run.branch

        def _assign(target: Run) -> None:
            target.worktree = path
            target.branch = branch

        self._store.update(run.id, _assign)
        return self._store.require(run.id)

    def _open_log_files(self, run_id: str) -> LogFiles | None:
        try:
            return LogFiles.create(self._sessions_dir(), run_id)
        except OSError as exc:
            logger.warning("Could not open run log files", extra={"run_id": run_id, "error": str(exc)})
            return None

    def _close_log_files(self, handle: _RunHandle | None) -> None:
        if handle is not None and handle.log_files is not None:
            handle.log_files.close()

    def _fail_start(self, handle: _RunHandle, message: str) -> Run:
        run_id = handle.run_id

        def _fail(target: Run) -> None:
            if target.is_terminal():
                return
            target.transition(RunState.FAILED)
            target.error = message
            target.pid = 0
            target.completed_at = self._clock()

        self._store.update(run_id, _fail)
        self._append(handle, stderr_event(message), "")
        self._close_log_files(handle)
        self._persist(run_id)
        logger.warning("Run failed to start", extra={"run_id": run_id, "error": message})
        return self._store.require(run_id)

    async def _abandon_start(self, handle: _RunHandle) -> Run:
        """Unwind a start or follow-up that a cancel overtook while it was awaiting."""

        run_id = handle.run_id
        await self._terminate(handle)
        self._store.set_pid(run_id, 0)
        self._close_log_files(handle)
        self._persist(run_id)
        logger.info("Start abandoned after cancel", extra={"run_id": run_id})
        return self._store.require(run_id)

    async def _spawn(
        self,
        handle: _RunHandle,
        skill: str,
        index: int,
        prompt: str,
        options: RunOptions,
    ) -> asyncio.subprocess.Process | None:
        run = self._store.require(handle.run_id)
        options.workdir = Path(run.worktree) if run.worktree else None
        command = " ".join(self._runtime.command_line("<prompt>", options))
        try:
            process = await self._runtime.start(prompt, options)
        except OSError as exc:
            self._fail_start(handle, f"spawn {skill}: {exc}")
            return None

        handle.process = process

        def _record(target: Run) -> None:
            target.pid = process.pid
            target.command = command
            target.current_skill = skill
            target.skill_index = index + 1

        self._store.update(handle.run_id, _record)
        logger.info(
            "Spawned agent",
            extra={"run_id": handle.run_id, "pid": process.pid, "skill": skill},
        )
        return process

    async def _drive(
        self,
        handle: _RunHandle,
        skills: list[str],
        prompt_for: PromptBuilder,
        options: RunOptions,
        first: asyncio.subprocess.Process,
        *,
        review: bool,
    ) -> None:
        run_id = handle.run_id
        previous = ""
        process: asyncio.subprocess.Process | None = first
        try:
            for index, skill in enumerate(skills):
                if index > 0:
                    await handle.unpaused.wait()
                    if handle.cancelled:
                        return
                    process = await self._spawn(handle, skill, index, prompt_for(skill, index, previous), options)
                    if process is None:
                        return
                result = await self._run_step(handle, process, skill)
                if handle.cancelled:
                    return
                if result.returncode != 0 or result.is_error:
                    detail = result.result_text.strip() or f"exit status {result.returncode}"
                    self._finish(run_id, RunState.FAILED, f"{skill} failed: {detail}")
                    return
                previous = result.result_text

            passed = review and review_passed(previous)
            self._finish(run_id, RunState.COMPLETED if passed else RunState.REVIEWING)
        except Exception as exc:
            logger.exception("Run driver crashed", extra={"run_id": run_id})
            if not handle.cancelled:
                self._finish(run_id, RunState.FAILED, f"supervisor error: {exc}")
        finally:
            if not handle.cancelled:
                self._close_log_files(handle)

    async def _run_step(
        self, handle: _RunHandle, process: asyncio.subprocess.Process, skill: str
    ) -> StepResult:
        step = StepResult(returncode=None)
        handle.readers = [
            asyncio.create_task(self._read_stream(handle, "stdout", process.stdout, skill, step)),
            asyncio.create_task(self._read_stream(handle, "stderr", process.stderr, skill, step)),
        ]
        step.returncode = await process.wait()
        _, pending = await asyncio.wait(handle.readers, timeout=self._settings.cancel_grace_seconds or None)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        handle.readers = []
        self._store.set_pid(handle.run_id, 0)
        return step

    async def _read_stream(
        self,
        handle: _RunHandle,
        stream: str,
        reader: asyncio.StreamReader | None,
        skill: str,
        step: StepResult,
    ) -> None:
        if reader is None:
            return
        decode = decoder_for(self._runtime.stream_format)
        while True:
            try:
                raw = await reader.readline()
            except ValueError as exc:
                self._reader_error(handle, stream, skill, exc)
                continue
            except (OSError, asyncio.IncompleteReadError) as exc:
                self._reader_error(handle, stream, skill, exc)
                return
            if not raw:
                return
            if handle.log_files is not None:
                try:
                    handle.log_files.write(stream, raw)
                except (OSError, ValueError) as exc:
                    logger.warning("Log file write failed", extra={"run_id": handle.run_id, "error": str(exc)})
                    handle.log_files = None
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if stream == "stdout":
                for event in decode(text):
                    self._handle_event(handle, event, skill, step)
            elif text.strip():
                self._append(handle, stderr_event(text), skill)

    def _reader_error(self, handle: _RunHandle, stream: str, skill: str, exc: BaseException) -> None:
        logger.warning("Output reader error", extra={"run_id": handle.run_id, "stream": stream, "error": str(exc)})
        self._append(handle, stderr_event(f"{stream} reader: {exc}"), skill)

    def _handle_event(self, handle: _RunHandle, event: StreamEvent, skill: str, step: StepResult) -> None:
        run_id = handle.run_id
        run = self._store.get(run_id)
        if run is not None and run.state is RunState.ROUTING:
            self._store.try_update_state(run_id, RunState.RUNNING)

        self._append(handle, event, skill)

        if event.type is EventType.TEXT:
            step.last_text = event.text
        elif event.type is EventType.TOOL_USE and event.tool_name.lower() == "bash":
            self._check_tool_safety(handle, event, skill)
        elif event.type is EventType.RESULT:
            step.result_text = event.text or step.last_text
            step.is_error = step.is_error or event.is_error
            if event.usage is not None:
                self._store.append_cost(
                    run_id,
                    skill,
                    tokens_in=event.usage.input_tokens,
                    tokens_out=event.usage.output_tokens,
                    cost=event.usage.cost_usd,
                )
                self._check_limits(handle, skill)

    def _check_tool_safety(self, handle: _RunHandle, event: StreamEvent, skill: str) -> None:
        if self._hooks is None:
            return
        command = tool_field(event.tool_input, "command")
        if not command:
            return
        blocked, pattern = self._hooks.matcher.check(command)
        if not blocked:
            return
        logger.warning(
            "Agent command matched a safety pattern",
            extra={"run_id": handle.run_id, "pattern": pattern},
        )
        self._log_notice(handle, f"WARNING: safety pattern matched: {pattern}", skill, EventType.ERROR)

    def _check_limits(self, handle: _RunHandle, skill: str) -> None:
        run = self._store.get(handle.run_id)
        if run is None:
            return
        exceeded, reason = check_limits(
            run.tokens,
            run.cost,
            max_tokens=self._settings.max_tokens_per_run,
            max_cost=self._settings.max_cost_per_run,
        )
        if not exceeded:
            return
        logger.warning("Run exceeded its budget", extra={"run_id": handle.run_id, "reason": reason})
        self._log_notice(handle, f"WARNING: {reason}; pausing run", skill, EventType.ERROR)
        self.pause(handle.run_id)

    def _append(self, handle: _RunHandle, event: StreamEvent, skill: str) -> None:
        timestamp = self._timestamp()
        for formatted in format_event(event, timestamp, skill):
            handle.output.append(formatted.line, formatted.entry)
        self._notify_output(handle.run_id)

    def _log_notice(
        self,
        handle: _RunHandle,
        message: str,
        skill: str | None = None,
        event_type: EventType = EventType.TEXT,
    ) -> None:
        if skill is None:
            run = self._store.get(handle.run_id)
            skill = run.current_skill if run is not None else ""
        timestamp = self._timestamp()
        entry = LogEntry(timestamp=timestamp, skill=skill, summary=message, type=event_type)
        handle.output.append(f"{line_prefix(timestamp, skill)} {message}", entry)
        self._notify_output(handle.run_id)

    def _notify_output(self, run_id: str) -> None:
        if self._on_output is None:
            return
        try:
            self._on_output(run_id)
        except Exception:
            logger.exception("Output listener failed", extra={"run_id": run_id})

    def _timestamp(self) -> str:
        return self._clock().astimezone().strftime("%H:%M:%S")

    def _finish(self, run_id: str, state: RunState, error: str | None = None) -> None:
        def _apply(target: Run) -> None:
            if target.state is RunState.PAUSED and state is not RunState.FAILED:
                target.transition(RunState.RUNNING)
            if target.state is RunState.ROUTING and state is not RunState.FAILED:
                target.transition(RunState.RUNNING)
            target.transition(state)
            if error is not None:
                target.error = error
            target.pid = 0
            if target.is_terminal():
                target.completed_at = self._clock()

        self._store.update(run_id, _apply)
        self._persist(run_id)
        logger.info("Run finished", extra={"run_id": run_id, "state": state.value})

    def _signal(self, handle: _RunHandle, signum: int) -> bool:
        process = handle.process
        if process is None or process.returncode is not None:
            return False
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            return False
        except PermissionError:
            try:
                process.send_signal(signum)
            except ProcessLookupError:
                return False
        return True

    async def _terminate(self, handle: _RunHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        self._signal(handle, signal.SIGCONT)
        self._signal(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.cancel_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Agent ignored SIGTERM, killing", extra={"run_id": handle.run_id, "pid": process.pid})
            self._signal(handle, signal.SIGKILL)
            await process.wait()

    async def _terminate_pid(self, pid: int) -> None:
        """Stop a process agtop did not spawn itself, e.g. one found on rehydration."""

        def _send(signum: int) -> bool:
            try:
                os.killpg(pid, signum)
            except (ProcessLookupError, PermissionError):
                try:
                    os.kill(pid, signum)
                except (ProcessLookupError, PermissionError):
                    return False
            return True

        _send(signal.SIGCONT)
        if not _send(signal.SIGTERM):
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.cancel_grace_seconds
        while loop.time() < deadline:
            if not is_process_alive(pid):
                return
            await asyncio.sleep(0.1)
        _send(signal.SIGKILL)

    def _persist(self, run_id: str) -> None:
        if self._persistence is None:
            return
        run = self._store.get(run_id)
        if run is None:
            return
        stdout_path, stderr_path = self.log_file_paths(run_id)
        try:
            self._persistence.save(run, self.log_tail(run_id), stdout_path, stderr_path)
        except PersistenceError as exc:
            logger.warning("Failed to save session", extra={"run_id": run_id, "error": str(exc)})


__all__ = [
    "CANCELLED_ERROR",
    "ConcurrencyLimitError",
    "RunAlreadyActiveError",
    "StepResult",
    "Supervisor",
    "SupervisorError",
]
