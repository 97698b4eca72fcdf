"""Command safety guard."""

from .hooks import (
    BLOCKED_EXIT_CODE,
    GUARD_SCRIPT_PATH,
    HookEngine,
    is_script_safe,
    render_guard_script,
)
from .patterns import InvalidPatternError, PatternMatcher, compile_patterns
from .settings import (
    ClaudeSettings,
    HookCommand,
    HookMatcher,
    OpenCodeSettings,
    PermissionLists,
    SettingsMergeError,
    load_claude_settings,
    load_opencode_settings,
    merge_claude_settings,
    merge_opencode_settings,
    write_settings,
)

__all__ = [
    "BLOCKED_EXIT_CODE",
    "ClaudeSettings",
    "GUARD_SCRIPT_PATH",
    "HookCommand",
    "HookEngine",
    "HookMatcher",
    "InvalidPatternError",
    "OpenCodeSettings",
    "PatternMatcher",
    "PermissionLists",
    "SettingsMergeError",
    "compile_patterns",
    "is_script_safe",
    "load_claude_settings",
    "load_opencode_settings",
    "merge_claude_settings",
    "merge_opencode_settings",
    "render_guard_script",
    "write_settings",
]
