"""On-disk session files so runs survive an agtop restart."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import Run, RunState, as_utc, utcnow
from .store import RunChange, RunStore

logger = logging.getLogger(__name__)

SESSION_VERSION = 1
MAX_LOG_TAIL = 1000
DEBOUNCE_SECONDS = 0.5

RESTARTED_ERROR = "process no longer running (agtop restarted)"
EXITED_ERROR = "process exited while agtop was not running"


class PersistenceError(RuntimeError):
    """Raised when a session file cannot be written or removed."""


class SessionFile(BaseModel):
    """Serialized run plus the pointers needed to restore its output."""

    version: int = SESSION_VERSION
    run: Run
    log_tail: list[str] = Field(default_factory=list)
    stdout_log_path: str = ""
    stderr_log_path: str = ""
    saved_at: datetime = Field(default_factory=utcnow)

    @field_validator("saved_at")
    @classmethod
    def _aware_saved_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def has_log_files(self) -> bool:
        return bool(self.stdout_log_path and self.stderr_log_path)


def is_process_alive(pid: int) -> bool:
    """Return whether ``pid`` names an existing process."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(slots=True)
class RehydrateResult:
    count: int = 0
    watch_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class Persistence:
    """Reads and writes one ``<run_id>.json`` session file per run."""

    def __init__(
        self,
        sessions_dir: Path,
        *,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self._dir = Path(sessions_dir)
        self._clock = clock or utcnow
        self._monotonic = monotonic or time.monotonic
        self._lock = threading.Lock()
        self._last_save: dict[str, float] = {}
        self._last_state: dict[str, RunState] = {}

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    def path_for(self, run_id: str) -> Path:
        return self._dir / f"{run_id}.json"

    def save(
        self,
        run: Run,
        log_tail: Iterable[str] | None = None,
        stdout_log_path: str = "",
        stderr_log_path: str = "",
    ) -> Path | None:
        """Write ``run`` atomically, replacing any previous session file."""

        if not run.id:
            return None
        tail = list(log_tail or [])[-MAX_LOG_TAIL:]
        now = self._clock()
        stored = run.model_copy(deep=True)
        stored.saved_at = now
        session = SessionFile(
            run=stored,
            log_tail=tail,
            stdout_log_path=stdout_log_path,
            stderr_log_path=stderr_log_path,
            saved_at=now,
        )

        target = self.path_for(run.id)
        tmp = target.with_name(target.name + ".tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(session.model_dump_json(indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"write session file {target}: {exc}") from exc
        return target

    def load(self) -> list[SessionFile]:
        """Load every readable session, oldest run first.

        Unreadable, corrupt, empty-id or wrong-version files are skipped.
        """

        if not self._dir.is_dir():
            return []

        sessions: list[SessionFile] = []
        for path in sorted(self._dir.glob("*.json")):
            if not path.is_file():
                continue
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Failed to read session file", extra={"path": str(path), "error": str(exc)})
                continue
            except UnicodeDecodeError as exc:
                logger.warning("Skipping corrupt session file", extra={"path": str(path), "error": str(exc)})
                continue
            try:
                session = SessionFile.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("Skipping corrupt session file", extra={"path": str(path), "error": str(exc)})
                continue
            if session.version != SESSION_VERSION:
                logger.warning(
                    "Skipping session file with unsupported version",
                    extra={"path": str(path), "version": session.version},
                )
                continue
            if not session.run.id:
                logger.warning("Skipping session file with empty run id", extra={"path": str(path)})
                continue
            sessions.append(session)

        sessions.sort(key=lambda session: session.run.created_at)
        return sessions

    def remove(self, run_id: str) -> bool:
        """Delete a run's session file; returns ``False`` when it was already gone."""

        target = self.path_for(run_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"remove session file {target}: {exc}") from exc
        finally:
            with self._lock:
                self._last_save.pop(run_id, None)
                self._last_state.pop(run_id, None)
        return True

    def bind_store(
        self,
        store: RunStore,
        log_tail: Callable[[str], list[str]] | None = None,
        log_paths: Callable[[str], tuple[str, str]] | None = None,
    ) -> Callable[[], None]:
        """Save runs as the store changes; returns the unsubscribe callable.

        State changes and terminal states are written immediately; other
        updates to the same run are written at most once per debounce window.
        """

        def _on_change(change: RunChange) -> None:
            run = change.run
            if run is None:
                return
            now = self._monotonic()
            with self._lock:
                last = self._last_save.get(run.id)
                state_changed = self._last_state.get(run.id) != run.state
                due = last is None or now - last >= DEBOUNCE_SECONDS
                if not (run.is_terminal() or state_changed or due):
                    return
                self._last_save[run.id] = now
                self._last_state[run.id] = run.state

            tail = log_tail(run.id) if log_tail is not None else []
            stdout_path, stderr_path = log_paths(run.id) if log_paths is not None else ("", "")
            try:
                self.save(run, tail, stdout_path, stderr_path)
            except PersistenceError as exc:
                logger.warning("Failed to save session", extra={"run_id": run.id, "error": str(exc)})

        return store.subscribe(_on_change)

    def rehydrate(
        self,
        store: RunStore,
        *,
        inject_buffer: Callable[[str, list[str]], None] | None = None,
        replay_log_files: Callable[[str, str, str], None] | None = None,
        is_alive: Callable[[int], bool] = is_process_alive,
    ) -> RehydrateResult:
        """Restore saved sessions into ``store``.

        Non-terminal runs whose process is gone are marked failed; those still
        alive are returned in ``watch_ids`` for the caller to watch.
        """

        result = RehydrateResult()
        for session in self.load():
            run = session.run.model_copy(deep=True)
            if run.id in store:
                continue
            live = False
            if not run.is_terminal():
                if run.pid > 0 and is_alive(run.pid):
                    live = True
                else:
                    run.transition(RunState.FAILED)
                    run.error = RESTARTED_ERROR
                    run.pid = 0
                    run.completed_at = run.completed_at or self._clock()
                    result.failed_ids.append(run.id)

            store.add(run)
            result.count += 1
            if live:
                result.watch_ids.append(run.id)

            if session.has_log_files and replay_log_files is not None and not live:
                replay_log_files(run.id, session.stdout_log_path, session.stderr_log_path)
            elif inject_buffer is not None and session.log_tail:
                inject_buffer(run.id, list(session.log_tail))

            if run.id in result.failed_ids:
                try:
                    self.save(run, session.log_tail, session.stdout_log_path, session.stderr_log_path)
                except PersistenceError as exc:
                    logger.warning("Failed to save session", extra={"run_id": run.id, "error": str(exc)})

            with self._lock:
                self._last_save[run.id] = self._monotonic()
                self._last_state[run.id] = run.state
        return result


async def watch_pids(
    run_ids: Iterable[str],
    store: RunStore,
    *,
    interval: float = 5.0,
    is_alive: Callable[[int], bool] = is_process_alive,
) -> None:
    """Poll rehydrated runs until each has exited, marking exited ones failed."""

    remaining = list(run_ids)
    while remaining:
        await asyncio.sleep(interval)
        still_alive: list[str] = []
        for run_id in remaining:
            run = store.get(run_id)
            if run is None or run.is_terminal():
                continue
            if run.pid > 0 and is_alive(run.pid):
                still_alive.append(run_id)
                continue

            def _fail(target: Run) -> None:
                target.transition(RunState.FAILED)
                target.error = EXITED_ERROR
                target.pid = 0
                target.completed_at = target.completed_at or utcnow()

            store.update(run_id, _fail)
            logger.info("Rehydrated run exited", extra={"run_id": run_id})
        remaining = still_alive


__all__ = [
    "EXITED_ERROR",
    "MAX_LOG_TAIL",
    "Persistence",
    "PersistenceError",
    "RESTARTED_ERROR",
    "RehydrateResult",
    "SESSION_VERSION",
    "SessionFile",
    "is_process_alive",
    "watch_pids",
]
