"""Per-run git worktrees."""

from .manager import (
    WorktreeError,
    WorktreeExistsError,
    WorktreeManager,
    default_branch,
    parse_porcelain,
    resolve_worktree_root,
)
from .models import WorktreeRecord

__all__ = [
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeManager",
    "WorktreeRecord",
    "default_branch",
    "parse_porcelain",
    "resolve_worktree_root",
]
