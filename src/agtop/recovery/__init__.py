"""Crash recovery."""

from .cleanup import STALE_AFTER, CleanupAction, CleanupReport, run_cleanup

__all__ = ["CleanupAction", "CleanupReport", "STALE_AFTER", "run_cleanup"]
