"""Application bootstrap: wires settings, store, persistence and supervisor together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from . import __version__
from .config import AgtopSettings, get_settings
from .process import Supervisor
from .recovery import CleanupReport, run_cleanup
from .run import Persistence, RehydrateResult, Run, RunStore, watch_pids
from .runtime import RUNTIME_CLAUDE, RUNTIME_OPENCODE, AgentNotFoundError, AgentRuntime, select_runtime
from .safety import HookEngine
from .workflows import DEFAULT_WORKFLOW, WorkflowLoader, WorkflowSpec
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for agtop."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass
class AgtopApp:
    """The wired-up engine a UI or command-line front end drives."""

    settings: AgtopSettings
    store: RunStore
    persistence: Persistence
    worktrees: WorktreeManager
    hooks: HookEngine
    workflows: WorkflowLoader
    runtime: AgentRuntime | None
    supervisor: Supervisor | None
    runtime_metadata: dict[str, Any] = field(default_factory=dict)
    rehydrated: RehydrateResult = field(default_factory=RehydrateResult)
    version: str = __version__
    _unbind: Any = None
    _watcher: asyncio.Task | None = None

    def require_supervisor(self) -> Supervisor:
        if self.supervisor is None:
            raise AgentNotFoundError(self.runtime_metadata.get("error") or "agent runtime unavailable")
        return self.supervisor

    def workflow(self, name: str | None) -> WorkflowSpec:
        return self.workflows.get(name or DEFAULT_WORKFLOW)

    async def submit(
        self,
        prompt: str,
        *,
        workflow: str | None = None,
        task_id: str | None = None,
        branch: str = "",
    ) -> Run:
        """Register a new run and start it."""

        supervisor = self.require_supervisor()
        spec = self.workflow(workflow)
        run_id = self.store.add(Run(prompt=prompt, task_id=task_id, branch=branch, workflow=spec.name))
        return await supervisor.start(run_id, spec)

    def start_pid_watcher(self, interval: float = 5.0) -> asyncio.Task | None:
        """Watch rehydrated runs whose process outlived the previous agtop."""

        if not self.rehydrated.watch_ids or self._watcher is not None:
            return self._watcher
        self._watcher = asyncio.create_task(
            watch_pids(self.rehydrated.watch_ids, self.store, interval=interval),
            name="agtop-pid-watcher",
        )
        return self._watcher

    def cleanup(self, *, dry_run: bool = False) -> CleanupReport:
        """Run the reconciler against this app's live store.

        Runs removed from the store drop their output buffers through the
        supervisor's store subscription.
        """

        return run_cleanup(
            self.persistence,
            self.worktrees,
            dry_run=dry_run,
            store=self.store,
            stale_after=_stale_after(self.settings),
        )

    async def close(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            await asyncio.gather(self._watcher, return_exceptions=True)
            self._watcher = None
        if self.supervisor is not None:
            await self.supervisor.shutdown()
        if self._unbind is not None:
            self._unbind()
            self._unbind = None


def _stale_after(settings: AgtopSettings) -> timedelta:
    return timedelta(days=settings.stale_session_days)


def create_app(
    settings: Optional[AgtopSettings] = None,
    runtime: AgentRuntime | None = None,
    *,
    rehydrate: bool = True,
) -> AgtopApp:
    """Instantiate the engine, restoring saved sessions into the store."""

    settings = settings or get_settings()
    project_root = settings.resolved_project_root()

    hooks = HookEngine(settings.blocked_patterns, version=__version__)
    if hooks.error is not None:
        logger.warning("Safety patterns partially loaded: %s", hooks.error)

    runtime_metadata: dict[str, Any] = {"available": False, "name": None, "executable": None, "error": None}
    if runtime is None:
        try:
            runtime = select_runtime(
                settings.runtime,
                {RUNTIME_CLAUDE: settings.agent_command, RUNTIME_OPENCODE: settings.opencode_command},
            )
        except AgentNotFoundError as exc:
            runtime_metadata["error"] = str(exc)
            runtime = None
    if runtime is not None:
        runtime_metadata["available"] = True
        runtime_metadata["name"] = runtime.name
        runtime_metadata["executable"] = str(runtime.executable)

    store = RunStore()
    persistence = Persistence(settings.resolved_state_dir())
    worktrees = WorktreeManager(project_root, settings.resolved_worktree_root())
    workflows = WorkflowLoader(settings.resolved_workflow_paths())

    supervisor = None
    if runtime is not None:
        supervisor = Supervisor(
            store,
            runtime,
            worktrees,
            settings=settings,
            persistence=persistence,
            hooks=hooks,
        )

    app = AgtopApp(
        settings=settings,
        store=store,
        persistence=persistence,
        worktrees=worktrees,
        hooks=hooks,
        workflows=workflows,
        runtime=runtime,
        supervisor=supervisor,
        runtime_metadata=runtime_metadata,
    )

    if rehydrate:
        app.rehydrated = persistence.rehydrate(
            store,
            inject_buffer=supervisor.inject_buffer if supervisor is not None else None,
            replay_log_files=supervisor.replay_log_files if supervisor is not None else None,
        )
        if app.rehydrated.count:
            logger.info(
                "Rehydrated sessions",
                extra={
                    "count": app.rehydrated.count,
                    "live": len(app.rehydrated.watch_ids),
                    "failed": len(app.rehydrated.failed_ids),
                },
            )

    if supervisor is not None:
        app._unbind = persistence.bind_store(store, supervisor.log_tail, supervisor.log_file_paths)
    else:
        app._unbind = persistence.bind_store(store)
    return app


__all__ = ["AgtopApp", "configure_logging", "create_app"]
