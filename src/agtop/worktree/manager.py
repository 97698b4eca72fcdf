"""Per-run git worktree lifecycle."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path

from .models import WorktreeRecord

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "agtop/"


class WorktreeError(RuntimeError):
    """Raised when a git worktree operation fails."""


class WorktreeExistsError(WorktreeError):
    """Raised when creating a worktree whose directory already exists."""


def default_branch(run_id: str) -> str:
    return BRANCH_PREFIX + run_id


def resolve_worktree_root(repo_root: Path, worktree_path: str | None) -> Path:
    """Expand the configured worktree location relative to ``repo_root``."""

    if not worktree_path:
        return Path(repo_root) / ".agtop" / "worktrees"
    if worktree_path.startswith("~/"):
        return Path.home() / worktree_path[2:]
    path = Path(worktree_path)
    if path.is_absolute():
        return path
    return Path(repo_root) / path


def parse_porcelain(output: str) -> list[WorktreeRecord]:
    """Parse ``git worktree list --porcelain`` output."""

    records: list[WorktreeRecord] = []
    current: WorktreeRecord | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            if current is not None:
                records.append(current)
            current = WorktreeRecord(path=line[len("worktree ") :], branch=None)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD ") :]
        elif line.startswith("branch "):
            current.branch = line[len("branch ") :].removeprefix("refs/heads/")
    if current is not None:
        records.append(current)
    return records


class WorktreeManager:
    """Creates, lists and removes run worktrees under ``worktree_root``.

    The worktree for run ``X`` always lives at ``<worktree_root>/X``; nothing
    about worktrees is cached, ``list`` asks git every time.
    """

    def __init__(self, repo_root: Path, worktree_root: Path | None = None) -> None:
        self._repo_root = Path(repo_root)
        self._root = Path(worktree_root) if worktree_root is not None else resolve_worktree_root(
            self._repo_root, None
        )
        self._lock = threading.Lock()

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, run_id: str) -> Path:
        return self._root / run_id

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_dir()

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(self._repo_root),
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            raise WorktreeError(f"git {args[0]}: {exc}") from exc
        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise WorktreeError(f"git {' '.join(args[:2])}: {detail} (exit {result.returncode})")
        return result

    def _branch_exists(self, branch: str) -> bool:
        result = self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def create(self, run_id: str, branch: str | None = None) -> WorktreeRecord:
        """Create the worktree for ``run_id`` checked out to ``branch``.

        The branch defaults to ``agtop/<run_id>`` and is created when absent.
        """

        if not run_id:
            raise WorktreeError("run id must not be empty")
        branch = branch or default_branch(run_id)
        target = self.path_for(run_id)
        with self._lock:
            if target.exists():
                raise WorktreeExistsError(f"worktree already exists at {target}")
            try:
                self._root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise WorktreeError(f"create worktree dir {self._root}: {exc}") from exc
            if self._branch_exists(branch):
                self._git("worktree", "add", str(target), branch)
            else:
                self._git("worktree", "add", "-b", branch, str(target))
        head = self._git("-C", str(target), "rev-parse", "HEAD", check=False).stdout.strip() or None
        logger.info("Created worktree", extra={"run_id": run_id, "path": str(target), "branch": branch})
        return WorktreeRecord(path=str(target), branch=branch, head=head)

    def list(self) -> list[WorktreeRecord]:
        """Actual git worktrees located under the configured root."""

        output = self._git("worktree", "list", "--porcelain").stdout
        root = os.path.realpath(self._root)
        records = []
        for record in parse_porcelain(output):
            resolved = os.path.realpath(record.path)
            if os.path.dirname(resolved) == root:
                records.append(record)
        return records

    def remove(self, run_id: str, *, delete_branch: bool = False, branch: str | None = None) -> bool:
        """Remove the worktree for ``run_id`` and prune git's metadata.

        Removing a worktree that does not exist is a successful no-op and
        returns ``False``.
        """

        target = self.path_for(run_id)
        with self._lock:
            existed = target.exists()
            if existed:
                result = self._git("worktree", "remove", "--force", str(target), check=False)
                if result.returncode != 0 and target.exists():
                    try:
                        shutil.rmtree(target)
                    except OSError as exc:
                        raise WorktreeError(
                            f"remove worktree {target}: {(result.stderr or '').strip() or exc}"
                        ) from exc
            self._git("worktree", "prune")
            if delete_branch:
                self._git("branch", "-D", branch or default_branch(run_id), check=False)
        if existed:
            logger.info("Removed worktree", extra={"run_id": run_id, "path": str(target)})
        return existed


__all__ = [
    "BRANCH_PREFIX",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeManager",
    "default_branch",
    "parse_porcelain",
    "resolve_worktree_root",
]
