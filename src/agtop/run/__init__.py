"""Run entity, registry and session persistence."""

from .models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    InvalidTransitionError,
    Run,
    RunState,
    SkillCost,
    can_transition,
)
from .persistence import (
    Persistence,
    PersistenceError,
    RehydrateResult,
    SessionFile,
    is_process_alive,
    watch_pids,
)
from .store import DuplicateRunError, RunChange, RunNotFoundError, RunStore, RunStoreError

__all__ = [
    "ACTIVE_STATES",
    "DuplicateRunError",
    "InvalidTransitionError",
    "Persistence",
    "PersistenceError",
    "RehydrateResult",
    "Run",
    "RunChange",
    "RunNotFoundError",
    "RunState",
    "RunStore",
    "RunStoreError",
    "SessionFile",
    "SkillCost",
    "TERMINAL_STATES",
    "can_transition",
    "is_process_alive",
    "watch_pids",
]
