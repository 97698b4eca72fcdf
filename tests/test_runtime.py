from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

import pytest

from agtop.runtime import (
    AgentNotFoundError,
    AgentRuntime,
    AgentRuntimeError,
    OpenCodeRuntime,
    RunOptions,
    sanitize_environment,
    select_runtime,
)


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_build_args_renders_options(tmp_path: Path) -> None:
    runtime = AgentRuntime(write_script(tmp_path / "claude", "exit 0\n"))
    options = RunOptions(
        model="opus",
        max_turns=12,
        allowed_tools=("Read", "Bash"),
        permission_mode="acceptEdits",
    )

    assert runtime.build_args("fix it", options) == [
        "-p",
        "fix it",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "opus",
        "--max-turns",
        "12",
        "--allowedTools",
        "Read,Bash",
        "--permission-mode",
        "acceptEdits",
    ]
    assert runtime.build_args("x") == ["-p", "x", "--output-format", "stream-json", "--verbose"]
    assert runtime.command_line("x")[0] == str(tmp_path / "claude")


def test_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError):
        AgentRuntime(tmp_path / "missing")
    with pytest.raises(AgentNotFoundError):
        AgentRuntime(command="agtop-no-such-agent-binary")


def test_opencode_build_args(tmp_path: Path) -> None:
    runtime = OpenCodeRuntime(write_script(tmp_path / "opencode", "exit 0\n"))
    options = RunOptions(model="anthropic/claude-sonnet", max_turns=12, permission_mode="acceptEdits", agent="build")

    assert runtime.name == "opencode"
    assert runtime.stream_format == "opencode-json"
    assert runtime.build_args("fix it", options) == [
        "run",
        "fix it",
        "--format",
        "json",
        "--model",
        "anthropic/claude-sonnet",
        "--agent",
        "build",
    ]
    assert runtime.build_args("x") == ["run", "x", "--format", "json"]


@pytest.fixture
def bin_dir(tmp_path: Path, monkeypatch) -> Path:
    directory = tmp_path / "bin"
    directory.mkdir()
    monkeypatch.setenv("PATH", str(directory))
    return directory


def test_select_runtime_prefers_requested(bin_dir: Path) -> None:
    write_script(bin_dir / "claude", "exit 0\n")
    write_script(bin_dir / "opencode", "exit 0\n")

    assert type(select_runtime("claude")) is AgentRuntime
    assert type(select_runtime("opencode")) is OpenCodeRuntime


def test_select_runtime_falls_back_to_opencode(bin_dir: Path, caplog) -> None:
    write_script(bin_dir / "opencode", "exit 0\n")

    with caplog.at_level(logging.WARNING, logger="agtop.runtime.runner"):
        runtime = select_runtime("claude")

    assert isinstance(runtime, OpenCodeRuntime)
    assert runtime.executable == bin_dir / "opencode"
    assert "falling back" in caplog.text


def test_select_runtime_falls_back_to_claude(bin_dir: Path) -> None:
    write_script(bin_dir / "claude", "exit 0\n")

    runtime = select_runtime("opencode")

    assert type(runtime) is AgentRuntime
    assert runtime.name == "claude"


def test_select_runtime_uses_configured_commands(bin_dir: Path) -> None:
    write_script(bin_dir / "my-claude", "exit 0\n")

    runtime = select_runtime("claude", {"claude": "my-claude", "opencode": "my-opencode"})

    assert runtime.executable == bin_dir / "my-claude"


def test_select_runtime_reports_both_failures(bin_dir: Path) -> None:
    with pytest.raises(AgentNotFoundError) as excinfo:
        select_runtime("opencode")

    message = str(excinfo.value)
    assert message.startswith("no runtime available: opencode (")
    assert "claude (claude executable not found on PATH)" in message


def test_select_runtime_rejects_unknown_name() -> None:
    with pytest.raises(AgentRuntimeError):
        select_runtime("codex")


def test_start_runs_in_workdir_with_args(tmp_path: Path) -> None:
    script = write_script(tmp_path / "claude", 'echo "$@"\npwd\n')
    workdir = tmp_path / "worktree"
    workdir.mkdir()
    runtime = AgentRuntime(script)

    async def scenario() -> tuple[int, str]:
        process = await runtime.start("hello", RunOptions(model="sonnet", workdir=workdir))
        stdout, _ = await process.communicate()
        return process.returncode, stdout.decode()

    returncode, stdout = asyncio.run(scenario())

    assert returncode == 0
    args_line, cwd_line = stdout.strip().splitlines()
    assert args_line == "-p hello --output-format stream-json --verbose --model sonnet"
    assert Path(cwd_line).resolve() == workdir.resolve()


def test_start_uses_a_new_process_group(tmp_path: Path) -> None:
    runtime = AgentRuntime(write_script(tmp_path / "claude", "sleep 5\n"))

    async def scenario() -> tuple[int, int]:
        process = await runtime.start("x")
        group = os.getpgid(process.pid)
        os.killpg(group, signal.SIGKILL)
        await process.wait()
        return process.pid, group

    pid, group = asyncio.run(scenario())

    assert group == pid
    assert group != os.getpgid(0)


def test_version(tmp_path: Path) -> None:
    runtime = AgentRuntime(write_script(tmp_path / "claude", 'echo "1.0.42 (Claude Code)"\n'))

    result = asyncio.run(runtime.version())

    assert result.ok
    assert "1.0.42" in result.stdout


def test_sanitize_environment(monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/somewhere")
    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("AGTOP_TEST_VALUE", "kept")
    monkeypatch.delenv("GIT_EDITOR", raising=False)

    env = sanitize_environment({"EXTRA": "1"})

    assert "PYTHONPATH" not in env
    assert "CLAUDECODE" not in env
    assert env["GIT_EDITOR"] == "true"
    assert env["AGTOP_TEST_VALUE"] == "kept"
    assert env["EXTRA"] == "1"


def test_sanitize_environment_keeps_user_git_editor(monkeypatch) -> None:
    monkeypatch.setenv("GIT_EDITOR", "vim")

    assert sanitize_environment()["GIT_EDITOR"] == "vim"
