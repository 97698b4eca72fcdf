"""Run entity and its state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class InvalidTransitionError(RuntimeError):
    """Raised when a run is asked to move along an edge the state machine lacks."""


class RunState(str, Enum):
    QUEUED = "queued"
    ROUTING = "routing"
    RUNNING = "running"
    PAUSED = "paused"
    REVIEWING = "reviewing"
    MERGING = "merging"
    COMPLETED = "completed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {RunState.COMPLETED, RunState.ACCEPTED, RunState.REJECTED, RunState.FAILED}
)
ACTIVE_STATES = frozenset({RunState.QUEUED, RunState.ROUTING, RunState.RUNNING, RunState.PAUSED})

_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.QUEUED: frozenset({RunState.ROUTING, RunState.RUNNING, RunState.FAILED, RunState.REJECTED}),
    RunState.ROUTING: frozenset({RunState.RUNNING, RunState.FAILED, RunState.REJECTED}),
    RunState.RUNNING: frozenset(
        {
            RunState.PAUSED,
            RunState.REVIEWING,
            RunState.MERGING,
            RunState.COMPLETED,
            RunState.FAILED,
            RunState.REJECTED,
        }
    ),
    RunState.PAUSED: frozenset({RunState.RUNNING, RunState.FAILED, RunState.REJECTED}),
    RunState.REVIEWING: frozenset(
        {RunState.ACCEPTED, RunState.REJECTED, RunState.RUNNING, RunState.FAILED}
    ),
    RunState.MERGING: frozenset({RunState.COMPLETED, RunState.FAILED}),
}


def can_transition(current: RunState, target: RunState) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps as UTC so they compare with aware ones."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SkillCost(BaseModel):
    """Tokens and spend attributed to one workflow skill."""

    skill: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class Run(BaseModel):
    """One attempted agent task, tracked end to end."""

    id: str = ""
    task_id: str | None = None
    prompt: str = ""
    follow_up_prompts: list[str] = Field(default_factory=list)
    state: RunState = RunState.QUEUED

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    saved_at: datetime | None = None

    branch: str = ""
    worktree: str = ""
    pid: int = 0
    command: str = ""
    workflow: str = ""
    current_skill: str = ""
    skill_index: int = 0
    skill_total: int = 0
    model: str = ""

    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    skill_costs: list[SkillCost] = Field(default_factory=list)

    error: str = ""
    merge_status: str = ""
    pr_url: str = ""
    dev_server_url: str = ""

    @field_validator("created_at", "started_at", "completed_at", "saved_at")
    @classmethod
    def _aware_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def transition(self, target: RunState) -> None:
        """Move to ``target``, enforcing the state machine.

        Re-entering the current state is a no-op.
        """

        if target == self.state:
            return
        if not can_transition(self.state, target):
            raise InvalidTransitionError(
                f"run {self.id or '<new>'}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target

    def elapsed(self, now: datetime | None = None) -> timedelta:
        if self.started_at is None:
            return timedelta(0)
        end = self.completed_at or now or utcnow()
        return end - self.started_at


__all__ = [
    "ACTIVE_STATES",
    "InvalidTransitionError",
    "Run",
    "RunState",
    "SkillCost",
    "TERMINAL_STATES",
    "as_utc",
    "can_transition",
    "utcnow",
]
