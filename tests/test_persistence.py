from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from agtop.run import Persistence, Run, RunState, RunStore, watch_pids
from agtop.run.persistence import (
    EXITED_ERROR,
    MAX_LOG_TAIL,
    RESTARTED_ERROR,
    SESSION_VERSION,
    is_process_alive,
)

DEAD_PID = 99_999_999


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    run = Run(id="abc1234", prompt="add tests", state=RunState.REVIEWING, tokens_in=10, cost=0.2)

    path = persistence.save(run, ["[10:00:00 build] hi"], "/tmp/a.stdout", "/tmp/a.stderr")

    assert path == tmp_path / "abc1234.json"
    assert not (tmp_path / "abc1234.json.tmp").exists()
    (session,) = persistence.load()
    assert session.version == SESSION_VERSION
    assert session.run.prompt == "add tests"
    assert session.run.state is RunState.REVIEWING
    assert session.run.saved_at == session.saved_at
    assert session.log_tail == ["[10:00:00 build] hi"]
    assert session.has_log_files


def test_save_caps_log_tail(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    lines = [f"line {index}" for index in range(MAX_LOG_TAIL + 50)]

    persistence.save(Run(id="abc1234"), lines)

    (session,) = persistence.load()
    assert len(session.log_tail) == MAX_LOG_TAIL
    assert session.log_tail[0] == "line 50"


def test_save_skips_runs_without_id(tmp_path: Path) -> None:
    assert Persistence(tmp_path).save(Run()) is None
    assert list(tmp_path.iterdir()) == []


def test_load_skips_bad_files(tmp_path: Path, caplog) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="good001"))
    (tmp_path / "corrupt.json").write_text("{not json", encoding="utf-8")
    future = json.loads((tmp_path / "good001.json").read_text(encoding="utf-8"))
    future["version"] = SESSION_VERSION + 1
    future["run"]["id"] = "future1"
    (tmp_path / "future1.json").write_text(json.dumps(future), encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="agtop.run.persistence"):
        sessions = persistence.load()

    assert [session.run.id for session in sessions] == ["good001"]
    assert "Skipping corrupt session file" in caplog.text
    assert "unsupported version" in caplog.text


def test_load_skips_undecodable_files(tmp_path: Path, caplog) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="good001"))
    (tmp_path / "binary.json").write_bytes(b"\xff\xfe\x00garbage")

    with caplog.at_level(logging.WARNING, logger="agtop.run.persistence"):
        sessions = persistence.load()

    assert [session.run.id for session in sessions] == ["good001"]
    assert "Skipping corrupt session file" in caplog.text


def test_load_treats_naive_timestamps_as_utc(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="aware01", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc)))
    document = json.loads((tmp_path / "aware01.json").read_text(encoding="utf-8"))
    document["run"]["id"] = "naive01"
    document["run"]["created_at"] = "2024-01-01T00:00:00"
    document["saved_at"] = "2024-01-01T00:00:00"
    (tmp_path / "naive01.json").write_text(json.dumps(document), encoding="utf-8")

    sessions = persistence.load()

    assert [session.run.id for session in sessions] == ["naive01", "aware01"]
    assert sessions[0].run.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert sessions[0].saved_at.tzinfo is not None


def test_load_orders_by_creation_time(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="zzz0001", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)))
    persistence.save(Run(id="aaa0002", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc)))

    assert [session.run.id for session in persistence.load()] == ["zzz0001", "aaa0002"]


def test_load_missing_directory(tmp_path: Path) -> None:
    assert Persistence(tmp_path / "absent").load() == []


def test_remove_is_idempotent(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="abc1234"))

    assert persistence.remove("abc1234") is True
    assert persistence.remove("abc1234") is False


def test_is_process_alive() -> None:
    assert is_process_alive(os.getpid())
    assert not is_process_alive(0)
    assert not is_process_alive(DEAD_PID)


def test_rehydrate_marks_dead_runs_failed_and_keeps_live_ones(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="dead001", state=RunState.RUNNING, pid=DEAD_PID), ["[10:00:00 build] working"])
    persistence.save(Run(id="live001", state=RunState.RUNNING, pid=os.getpid()), ["[10:00:00 build] still going"])
    persistence.save(Run(id="done001", state=RunState.ACCEPTED), ["[10:00:00 test] Completed"])

    store = RunStore()
    injected: dict[str, list[str]] = {}
    result = persistence.rehydrate(store, inject_buffer=lambda run_id, lines: injected.update({run_id: lines}))

    assert result.count == 3
    assert result.failed_ids == ["dead001"]
    assert result.watch_ids == ["live001"]

    dead = store.require("dead001")
    assert dead.state is RunState.FAILED
    assert dead.error == RESTARTED_ERROR
    assert dead.pid == 0
    assert dead.completed_at is not None
    assert store.require("live001").state is RunState.RUNNING
    assert store.require("done001").state is RunState.ACCEPTED
    assert injected["dead001"] == ["[10:00:00 build] working"]
    assert set(injected) == {"dead001", "live001", "done001"}

    saved = {session.run.id: session for session in persistence.load()}
    assert saved["dead001"].run.state is RunState.FAILED
    assert saved["dead001"].log_tail == ["[10:00:00 build] working"]


def test_rehydrate_prefers_log_file_replay(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(
        Run(id="logs001", state=RunState.REVIEWING),
        ["tail line"],
        str(tmp_path / "logs001.stdout"),
        str(tmp_path / "logs001.stderr"),
    )
    replayed = []
    injected = []

    persistence.rehydrate(
        RunStore(),
        inject_buffer=lambda run_id, lines: injected.append(run_id),
        replay_log_files=lambda run_id, out, err: replayed.append((run_id, out, err)),
    )

    assert replayed == [("logs001", str(tmp_path / "logs001.stdout"), str(tmp_path / "logs001.stderr"))]
    assert injected == []


def test_rehydrate_skips_runs_already_in_store(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    persistence.save(Run(id="abc1234", prompt="from disk"))
    store = RunStore()
    store.add(Run(id="abc1234", prompt="in memory"))

    result = persistence.rehydrate(store)

    assert result.count == 0
    assert store.require("abc1234").prompt == "in memory"


def test_bind_store_debounces_same_state_updates(tmp_path: Path) -> None:
    now = [100.0]
    persistence = Persistence(tmp_path, monotonic=lambda: now[0])
    store = RunStore()
    persistence.bind_store(store, log_tail=lambda run_id: [f"tail for {run_id}"])

    def saved_cost() -> float:
        (session,) = persistence.load()
        return session.run.cost

    run_id = store.add(Run(prompt="x"))
    store.append_cost(run_id, "build", cost=1.0)
    assert saved_cost() == 0.0

    store.update_state(run_id, RunState.RUNNING)
    assert saved_cost() == 1.0

    store.append_cost(run_id, "build", cost=1.0)
    assert saved_cost() == 1.0

    now[0] += 1.0
    store.append_cost(run_id, "build", cost=1.0)
    assert saved_cost() == 3.0
    assert persistence.load()[0].log_tail == [f"tail for {run_id}"]


def test_bind_store_unsubscribe(tmp_path: Path) -> None:
    persistence = Persistence(tmp_path)
    store = RunStore()
    unbind = persistence.bind_store(store)
    unbind()

    store.add(Run(prompt="x"))

    assert persistence.load() == []


def test_watch_pids_fails_exited_runs() -> None:
    store = RunStore()
    store.add(Run(id="live001", state=RunState.RUNNING, pid=4242))
    store.add(Run(id="done001", state=RunState.RUNNING, pid=4243))
    alive = {4242: 2}

    def fake_alive(pid: int) -> bool:
        remaining = alive.get(pid, 0)
        alive[pid] = remaining - 1
        return remaining > 0

    asyncio.run(watch_pids(["live001", "done001"], store, interval=0, is_alive=fake_alive))

    for run_id in ("live001", "done001"):
        run = store.require(run_id)
        assert run.state is RunState.FAILED
        assert run.error == EXITED_ERROR
        assert run.pid == 0
