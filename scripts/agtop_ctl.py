"""agtop command line: setup, recovery and headless runs."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path

from agtop import __version__
from agtop.app import configure_logging, create_app
from agtop.config import AgtopSettings
from agtop.recovery import run_cleanup
from agtop.run import Persistence, RunState
from agtop.runtime import AgentNotFoundError
from agtop.safety import (
    BLOCKED_EXIT_CODE,
    HookEngine,
    SettingsMergeError,
    load_claude_settings,
    load_opencode_settings,
    merge_claude_settings,
    merge_opencode_settings,
    write_settings,
)
from agtop.workflows import WorkflowLoadError
from agtop.worktree import WorktreeError, WorktreeManager


def load_settings(args: argparse.Namespace) -> AgtopSettings:
    settings = AgtopSettings()
    if getattr(args, "project", None):
        settings.project_root = Path(args.project)
    return settings


def cmd_init(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    root = settings.resolved_project_root()
    hooks = HookEngine(settings.blocked_patterns, version=__version__)
    if hooks.error is not None:
        print(f"warning: {hooks.error}", file=sys.stderr)

    script = hooks.write_guard_script(root)
    print(f"wrote {script.relative_to(root)}")

    try:
        if args.runtime == "opencode":
            target = root / "opencode.json"
            merged = merge_opencode_settings(load_opencode_settings(target), hooks.generate_opencode_settings())
        else:
            target = root / ".claude" / "settings.json"
            merged = merge_claude_settings(load_claude_settings(target), hooks.generate_settings())
    except SettingsMergeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    write_settings(target, merged)
    print(f"updated {target.relative_to(root)}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    persistence = Persistence(settings.resolved_state_dir())
    worktrees = WorktreeManager(settings.resolved_project_root(), settings.resolved_worktree_root())
    report = run_cleanup(
        persistence,
        worktrees,
        dry_run=args.dry_run,
        stale_after=timedelta(days=settings.stale_session_days),
    )
    for action in report.actions:
        print(f"  {action.describe()}")
    for warning in report.warnings:
        print(f"  warning: {warning}", file=sys.stderr)
    print()
    print(report.summary())


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    sessions = Persistence(settings.resolved_state_dir()).load()
    if args.json:
        payload = [json.loads(session.model_dump_json()) for session in sessions]
        print(json.dumps(payload, indent=2))
        return
    for session in sessions:
        run = session.run
        print(
            f"{run.id} [{run.state.value}] pid={run.pid} "
            f"tokens={run.tokens} cost=${run.cost:.4f} saved={session.saved_at.isoformat()}"
        )


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    manager = WorktreeManager(settings.resolved_project_root(), settings.resolved_worktree_root())
    try:
        records = manager.list()
    except WorktreeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    print(json.dumps([{"run_id": r.run_id, "path": r.path, "branch": r.branch, "head": r.head} for r in records], indent=2))


def cmd_check(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    hooks = HookEngine(settings.blocked_patterns, version=__version__)
    blocked, reason = hooks.check_command(args.command)
    if blocked:
        print(reason)
        raise SystemExit(BLOCKED_EXIT_CODE)
    print("allowed")


async def _run_headless(args: argparse.Namespace) -> int:
    app = create_app(load_settings(args))
    try:
        run = await app.submit(args.prompt, workflow=args.workflow, task_id=args.task_id)
        supervisor = app.require_supervisor()
        printed = 0
        while supervisor.is_active(run.id):
            lines = supervisor.output(run.id).ring
            written = lines.total_written
            if written > printed:
                for line in lines.tail(written - printed):
                    print(line)
                printed = written
            await asyncio.sleep(0.2)
        lines = supervisor.output(run.id).ring
        if lines.total_written > printed:
            for line in lines.tail(lines.total_written - printed):
                print(line)
        final = await supervisor.wait(run.id)
    finally:
        await app.close()
    print(f"run {final.id}: {final.state.value}" + (f" ({final.error})" if final.error else ""))
    return 0 if final.state in {RunState.REVIEWING, RunState.COMPLETED, RunState.ACCEPTED} else 1


def cmd_run(args: argparse.Namespace) -> None:
    try:
        code = asyncio.run(_run_headless(args))
    except (AgentNotFoundError, WorkflowLoadError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    if code:
        raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="agtop run supervisor")
    parser.add_argument("--version", action="version", version=f"agtop {__version__}")
    parser.add_argument("--project", help="Project root (defaults to AGTOP_PROJECT_ROOT or cwd)")
    parser.add_argument("--log-level", default=None, help="Override AGTOP_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd")

    p_init = sub.add_parser("init", help="Write the safety guard and agent hook settings")
    p_init.add_argument("--runtime", choices=["claude", "opencode"], default="claude")
    p_init.set_defaults(func=cmd_init)

    p_cleanup = sub.add_parser("cleanup", help="Remove stale sessions and orphaned worktrees")
    p_cleanup.add_argument("--dry-run", action="store_true", help="Only report what would be removed")
    p_cleanup.set_defaults(func=cmd_cleanup)

    p_sessions = sub.add_parser("sessions", help="List saved sessions")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_worktrees = sub.add_parser("worktrees", help="List run worktrees")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_check = sub.add_parser("check", help="Test a command against the safety patterns")
    p_check.add_argument("command")
    p_check.set_defaults(func=cmd_check)

    p_run = sub.add_parser("run", help="Run one task headless and stream its output")
    p_run.add_argument("prompt")
    p_run.add_argument("--workflow", default=None)
    p_run.add_argument("--task-id", default=None)
    p_run.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    configure_logging((args.log_level or load_settings(args).log_level).upper())
    args.func(args)


if __name__ == "__main__":
    main()
