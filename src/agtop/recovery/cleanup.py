"""Reconcile saved sessions, live runs and worktrees after a crash."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from ..run.models import as_utc, utcnow
from ..run.persistence import Persistence, PersistenceError, SessionFile, is_process_alive
from ..run.store import RunStore
from ..worktree import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=7)


@dataclass(slots=True)
class CleanupAction:
    """One removal performed (or, in dry-run mode, planned)."""

    kind: str
    run_id: str
    detail: str
    dry_run: bool

    def describe(self) -> str:
        if self.dry_run:
            return f"[dry-run] would remove {self.kind}: {self.run_id} ({self.detail})"
        return f"removed {self.kind}: {self.run_id}"


@dataclass(slots=True)
class CleanupReport:
    dry_run: bool
    removed_sessions: int = 0
    removed_worktrees: int = 0
    actions: list[CleanupAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    in_use: set[str] = field(default_factory=set)

    def summary(self) -> str:
        prefix = "[dry-run] " if self.dry_run else ""
        return (
            f"{prefix}Removed {self.removed_sessions} session files, "
            f"{self.removed_worktrees} orphaned worktrees."
        )


def _round_hours(delta: timedelta) -> str:
    hours = round(delta.total_seconds() / 3600)
    return f"{hours}h"


def _classify(
    session: SessionFile,
    now: datetime,
    stale_after: timedelta,
    is_alive: Callable[[int], bool],
) -> tuple[str, str] | None:
    run = session.run
    if run.is_terminal():
        age = now - session.saved_at
        if age > stale_after:
            return "stale session", f"state={run.state.value}, age={_round_hours(age)}"
        return None
    if run.pid <= 0 or not is_alive(run.pid):
        return "dead session", f"state={run.state.value}, pid={run.pid}"
    return None


def _remove_log_files(session: SessionFile, report: CleanupReport) -> None:
    for raw in (session.stdout_log_path, session.stderr_log_path):
        if not raw:
            continue
        try:
            Path(raw).unlink(missing_ok=True)
        except OSError as exc:
            report.warnings.append(f"remove log file {raw}: {exc}")


def run_cleanup(
    persistence: Persistence,
    worktrees: WorktreeManager,
    *,
    dry_run: bool = False,
    store: RunStore | None = None,
    now: datetime | None = None,
    is_alive: Callable[[int], bool] = is_process_alive,
    stale_after: timedelta = STALE_AFTER,
    on_removed: Callable[[str], None] | None = None,
) -> CleanupReport:
    """Remove stale and dead sessions, then sweep worktrees nobody is using.

    Terminal sessions last saved more than ``stale_after`` ago and
    non-terminal sessions whose process is gone are removed together with
    their log files. Any other session, and any non-terminal run in the live
    ``store``, marks its run id as in use; worktrees named after a run id that
    is not in use are removed. Per-item failures become warnings.
    """

    now = as_utc(now) or utcnow()
    report = CleanupReport(dry_run=dry_run)
    live = store.list() if store is not None else []
    live_ids = {run.id for run in live if not run.is_terminal()}

    for session in persistence.load():
        run_id = session.run.id
        verdict = None if run_id in live_ids else _classify(session, now, stale_after, is_alive)
        if verdict is None:
            report.in_use.add(run_id)
            continue

        kind, detail = verdict
        if dry_run:
            report.removed_sessions += 1
            report.actions.append(CleanupAction(kind, run_id, detail, dry_run=True))
            continue

        try:
            persistence.remove(run_id)
        except PersistenceError as exc:
            report.warnings.append(f"remove session {run_id}: {exc}")
            logger.warning("Failed to remove session", extra={"run_id": run_id, "error": str(exc)})
        else:
            report.removed_sessions += 1
            report.actions.append(CleanupAction("session", run_id, detail, dry_run=False))
        _remove_log_files(session, report)
        if store is not None:
            store.remove(run_id)
        if on_removed is not None:
            on_removed(run_id)

    removed_ids = {action.run_id for action in report.actions}
    for run in live:
        if run.id not in removed_ids:
            report.in_use.add(run.id)

    try:
        records = worktrees.list()
    except WorktreeError as exc:
        report.warnings.append(f"list worktrees: {exc}")
        logger.warning("Failed to list worktrees", extra={"error": str(exc)})
        return report

    for record in records:
        run_id = record.run_id
        if run_id in report.in_use:
            continue
        detail = f"branch={record.branch or '-'}"
        if dry_run:
            report.removed_worktrees += 1
            report.actions.append(CleanupAction("orphaned worktree", run_id, detail, dry_run=True))
            continue
        try:
            worktrees.remove(run_id)
        except WorktreeError as exc:
            report.warnings.append(f"remove worktree {run_id}: {exc}")
            logger.warning("Failed to remove worktree", extra={"run_id": run_id, "error": str(exc)})
            continue
        report.removed_worktrees += 1
        report.actions.append(CleanupAction("worktree", run_id, detail, dry_run=False))

    return report


__all__ = ["CleanupAction", "CleanupReport", "STALE_AFTER", "run_cleanup"]
