"""Environment handed to spawned agent processes."""

from __future__ import annotations

import os
from typing import Mapping

# Interpreter settings of agtop's own virtualenv, and the marker the agent CLI
# uses to refuse running nested inside another agent session.
STRIPPED_VARIABLES = frozenset(
    {
        "PYTHONHOME",
        "PYTHONPATH",
        "VIRTUAL_ENV",
        "PIP_RESPECT_VIRTUALENV",
        "CLAUDECODE",
    }
)

# Agents commit inside worktrees with no terminal attached.
AGENT_DEFAULTS = {"GIT_EDITOR": "true"}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    env = {key: value for key, value in os.environ.items() if key not in STRIPPED_VARIABLES}
    for key, value in AGENT_DEFAULTS.items():
        env.setdefault(key, value)
    if additional:
        env.update(additional)
    return env


__all__ = ["AGENT_DEFAULTS", "STRIPPED_VARIABLES", "sanitize_environment"]
