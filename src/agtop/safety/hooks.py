"""Safety hook engine and guard script generation."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from .patterns import InvalidPatternError, PatternMatcher, compile_patterns
from .settings import (
    ClaudeSettings,
    HookCommand,
    HookMatcher,
    OpenCodeSettings,
)

logger = logging.getLogger(__name__)

GUARD_SCRIPT_PATH = Path(".agtop") / "hooks" / "safety-guard.sh"
BLOCKED_EXIT_CODE = 2

_UNSAFE_SEQUENCES = ('"', "`", "$(", "]]", ";", "\n", "\r")


def is_script_safe(pattern: str) -> bool:
    """Return whether ``pattern`` can be embedded in the guard script verbatim."""

    return not any(sequence in pattern for sequence in _UNSAFE_SEQUENCES)


def _quote(pattern: str) -> str:
    return "'" + pattern.replace("'", "'\\''") + "'"


def render_guard_script(patterns: Iterable[str], *, version: str = "") -> str:
    """Render the bash guard script for the script-safe subset of ``patterns``."""

    safe = [pattern for pattern in patterns if is_script_safe(pattern)]
    header = f"agtop {version}".strip()
    lines = [
        "#!/usr/bin/env bash",
        f"# Safety guard generated by {header}.",
        "# Reads a PreToolUse payload (or a raw command) on stdin.",
        f"# Exit {BLOCKED_EXIT_CODE} blocks the command, exit 0 allows it.",
        "",
        'INPUT="$(cat)"',
        'COMMAND="$INPUT"',
        "if command -v jq >/dev/null 2>&1",
        "then",
        "  EXTRACTED=\"$(printf '%s' \"$INPUT\" | jq -r '.tool_input.command // empty' 2>/dev/null)\"",
        '  if [[ -n "$EXTRACTED" ]]',
        "  then",
        '    COMMAND="$EXTRACTED"',
        "  fi",
        "fi",
        "",
        "PATTERNS=(",
    ]
    lines.extend(f"  {_quote(pattern)}" for pattern in safe)
    lines.extend(
        [
            ")",
            "",
            "shopt -s nocasematch",
            'for pattern in "${PATTERNS[@]}"',
            "do",
            "  if [[ $COMMAND =~ $pattern ]]",
            "  then",
            '    echo "agtop: blocked by safety pattern: $pattern" >&2',
            f"    exit {BLOCKED_EXIT_CODE}",
            "  fi",
            "done",
            "",
            "exit 0",
            "",
        ]
    )
    return "\n".join(lines)


class HookEngine:
    """Combines the in-process matcher with the artifacts handed to agent runtimes."""

    def __init__(self, patterns: Iterable[str], *, version: str = "") -> None:
        self._matcher, self._error = compile_patterns(patterns)
        self._version = version
        if self._error is not None:
            logger.warning("Some safety patterns were skipped", extra={"error": str(self._error)})

    @property
    def matcher(self) -> PatternMatcher:
        return self._matcher

    @property
    def error(self) -> InvalidPatternError | None:
        """Aggregated compilation error, if any pattern was skipped."""

        return self._error

    def check_command(self, command: str) -> tuple[bool, str]:
        blocked, pattern = self._matcher.check(command)
        if blocked:
            return True, f"blocked by safety pattern: {pattern}"
        return False, ""

    def generate_guard_script(self) -> str:
        return render_guard_script(self._matcher.patterns(), version=self._version)

    def write_guard_script(self, project_root: Path) -> Path:
        """Write the executable guard script under ``project_root``."""

        target = Path(project_root) / GUARD_SCRIPT_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.generate_guard_script(), encoding="utf-8")
        os.chmod(target, 0o755)
        return target

    def generate_settings(self) -> ClaudeSettings:
        return ClaudeSettings(
            hooks={
                "PreToolUse": [
                    HookMatcher(
                        matcher="Bash",
                        hooks=[HookCommand(type="command", command=str(GUARD_SCRIPT_PATH))],
                    )
                ]
            }
        )

    def generate_opencode_settings(self) -> OpenCodeSettings:
        bash: dict[str, str] = {"*": "allow"}
        for pattern in self._matcher.patterns():
            bash[pattern] = "deny"
        return OpenCodeSettings(
            permission={
                "read": "allow",
                "edit": "allow",
                "bash": bash,
                "glob": "allow",
                "grep": "allow",
                "list": "allow",
            }
        )


__all__ = [
    "BLOCKED_EXIT_CODE",
    "GUARD_SCRIPT_PATH",
    "HookEngine",
    "is_script_safe",
    "render_guard_script",
]
