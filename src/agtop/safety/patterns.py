"""Regex matcher for destructive shell commands."""

from __future__ import annotations

import re
from typing import Iterable


class InvalidPatternError(ValueError):
    """Aggregates the safety patterns that failed to compile."""

    def __init__(self, failures: list[tuple[int, str, str]]) -> None:
        self.failures = failures
        details = "; ".join(f"pattern[{index}] {pattern!r}: {reason}" for index, pattern, reason in failures)
        super().__init__(f"invalid safety patterns: {details}")


class PatternMatcher:
    """Case-insensitive matcher over the patterns that compiled successfully."""

    def __init__(self, compiled: Iterable[tuple[str, re.Pattern[str]]] = ()) -> None:
        self._compiled = list(compiled)

    def check(self, command: str) -> tuple[bool, str]:
        """Return ``(blocked, pattern)`` for the first pattern matching ``command``."""

        for source, regex in self._compiled:
            if regex.search(command):
                return True, source
        return False, ""

    def patterns(self) -> list[str]:
        return [source for source, _ in self._compiled]

    def pattern_count(self) -> int:
        return len(self._compiled)


def compile_patterns(patterns: Iterable[str]) -> tuple[PatternMatcher, InvalidPatternError | None]:
    """Compile ``patterns`` best-effort.

    Patterns that fail to compile are skipped; the returned matcher is usable
    with the rest. The second element aggregates every failure, or is ``None``.
    """

    compiled: list[tuple[str, re.Pattern[str]]] = []
    failures: list[tuple[int, str, str]] = []
    for index, pattern in enumerate(patterns):
        try:
            compiled.append((pattern, re.compile(pattern, re.IGNORECASE)))
        except re.error as exc:
            failures.append((index, pattern, str(exc)))
    error = InvalidPatternError(failures) if failures else None
    return PatternMatcher(compiled), error


__all__ = ["InvalidPatternError", "PatternMatcher", "compile_patterns"]
