"""Worktree data models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class WorktreeRecord:
    """One git worktree as reported by ``git worktree list``."""

    path: str
    branch: str | None
    head: str | None = None

    @property
    def run_id(self) -> str:
        return Path(self.path).name


__all__ = ["WorktreeRecord"]
