"""Concurrency-safe in-memory registry of runs."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Callable

from .models import ACTIVE_STATES, InvalidTransitionError, Run, RunState, SkillCost, utcnow

logger = logging.getLogger(__name__)


class RunStoreError(RuntimeError):
    """Base class for run store errors."""


class RunNotFoundError(RunStoreError):
    """Raised when an operation names a run the store does not hold."""


class DuplicateRunError(RunStoreError):
    """Raised when adding a run whose id is already registered."""


@dataclass(slots=True)
class RunChange:
    """Notification payload delivered to subscribers after a mutation."""

    run_id: str
    run: Run | None
    previous_state: RunState | None
    revision: int

    @property
    def removed(self) -> bool:
        return self.run is None

    @property
    def state_changed(self) -> bool:
        return self.run is not None and self.run.state != self.previous_state


Subscriber = Callable[[RunChange], None]


def generate_run_id() -> str:
    return uuid.uuid4().hex[:7]


class RunStore:
    """Authoritative copy of every known run.

    Reads return deep copies. Mutations go through the methods below, run
    under the store lock, and notify subscribers after the lock is released.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._subscribers: list[Subscriber] = []
        self._revision = 0

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def add(self, run: Run) -> str:
        with self._lock:
            stored = run.model_copy(deep=True)
            if not stored.id:
                stored.id = generate_run_id()
                while stored.id in self._runs:
                    stored.id = generate_run_id()
            if stored.id in self._runs:
                raise DuplicateRunError(f"run {stored.id} already exists")
            self._runs[stored.id] = stored
            change = self._change(stored.id, stored, None)
        self._notify(change)
        return change.run_id

    def get(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run is not None else None

    def require(self, run_id: str) -> Run:
        run = self.get(run_id)
        if run is None:
            raise RunNotFoundError(f"run {run_id} not found")
        return run

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs

    def list(self) -> list[Run]:
        """Snapshot of all runs in insertion order."""

        with self._lock:
            return [run.model_copy(deep=True) for run in self._runs.values()]

    def update(self, run_id: str, fn: Callable[[Run], None]) -> bool:
        """Apply ``fn`` to the stored run under the lock.

        Returns ``False`` when the run is unknown. Exceptions raised by ``fn``
        propagate and the stored run is left untouched.
        """

        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                return False
            draft = current.model_copy(deep=True)
            fn(draft)
            draft.id = run_id
            self._runs[run_id] = draft
            change = self._change(run_id, draft, current.state)
        self._notify(change)
        return True

    def update_state(self, run_id: str, state: RunState, *, error: str | None = None) -> bool:
        """Transition a run, enforcing the state machine.

        Raises ``RunNotFoundError`` for unknown runs and
        ``InvalidTransitionError`` for illegal edges.
        """

        def _apply(run: Run) -> None:
            run.transition(state)
            if error is not None:
                run.error = error
            if run.is_terminal() and run.completed_at is None:
                run.completed_at = utcnow()

        if not self.update(run_id, _apply):
            raise RunNotFoundError(f"run {run_id} not found")
        return True

    def try_update_state(self, run_id: str, state: RunState, *, error: str | None = None) -> bool:
        """Like ``update_state`` but returns ``False`` instead of raising on illegal edges."""

        try:
            return self.update_state(run_id, state, error=error)
        except InvalidTransitionError as exc:
            logger.debug("Ignored state change", extra={"run_id": run_id, "error": str(exc)})
            return False

    def append_cost(
        self,
        run_id: str,
        skill: str,
        *,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost: float = 0.0,
    ) -> bool:
        """Add usage to the run totals and to its per-skill breakdown."""

        def _apply(run: Run) -> None:
            run.tokens_in += tokens_in
            run.tokens_out += tokens_out
            run.cost += cost
            for entry in run.skill_costs:
                if entry.skill == skill:
                    entry.tokens_in += tokens_in
                    entry.tokens_out += tokens_out
                    entry.cost += cost
                    break
            else:
                run.skill_costs.append(
                    SkillCost(skill=skill, tokens_in=tokens_in, tokens_out=tokens_out, cost=cost)
                )

        return self.update(run_id, _apply)

    def set_pid(self, run_id: str, pid: int) -> bool:
        def _apply(run: Run) -> None:
            run.pid = pid

        return self.update(run_id, _apply)

    def remove(self, run_id: str) -> bool:
        with self._lock:
            current = self._runs.pop(run_id, None)
            if current is None:
                return False
            change = self._change(run_id, None, current.state)
        self._notify(change)
        return True

    def count(self) -> int:
        with self._lock:
            return len(self._runs)

    def active_runs(self) -> int:
        with self._lock:
            return sum(1 for run in self._runs.values() if run.state in ACTIVE_STATES)

    def total_cost(self) -> float:
        with self._lock:
            return sum(run.cost for run in self._runs.values())

    def total_tokens(self) -> int:
        with self._lock:
            return sum(run.tokens for run in self._runs.values())

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register ``fn`` for change notifications; returns an unsubscribe callable."""

        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return _unsubscribe

    def _change(self, run_id: str, run: Run | None, previous: RunState | None) -> RunChange:
        self._revision += 1
        snapshot = run.model_copy(deep=True) if run is not None else None
        return RunChange(run_id=run_id, run=snapshot, previous_state=previous, revision=self._revision)

    def _notify(self, change: RunChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(change)
            except Exception:
                logger.exception("Run store subscriber failed", extra={"run_id": change.run_id})


__all__ = [
    "DuplicateRunError",
    "RunChange",
    "RunNotFoundError",
    "RunStore",
    "RunStoreError",
    "Subscriber",
    "generate_run_id",
]
