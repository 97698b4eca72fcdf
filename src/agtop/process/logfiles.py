"""Per-run stdout/stderr log files kept next to the session files."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import BinaryIO


def log_paths(sessions_dir: Path, run_id: str) -> tuple[Path, Path]:
    base = Path(sessions_dir)
    return base / f"{run_id}.stdout", base / f"{run_id}.stderr"


class LogFiles:
    """Append-only raw copies of a run's two output streams."""

    def __init__(self, stdout_path: Path, stderr_path: Path) -> None:
        self.stdout_path = Path(stdout_path)
        self.stderr_path = Path(stderr_path)
        self._handles: dict[str, BinaryIO] = {}
        self._lock = threading.Lock()

    @classmethod
    def create(cls, sessions_dir: Path, run_id: str) -> "LogFiles":
        """Open (appending) both log files for ``run_id``; ``OSError`` propagates."""

        stdout_path, stderr_path = log_paths(sessions_dir, run_id)
        files = cls(stdout_path, stderr_path)
        Path(sessions_dir).mkdir(parents=True, exist_ok=True)
        files._handles["stdout"] = open(stdout_path, "ab")
        try:
            files._handles["stderr"] = open(stderr_path, "ab")
        except OSError:
            files._handles["stdout"].close()
            raise
        return files

    def write(self, stream: str, data: bytes) -> None:
        with self._lock:
            handle = self._handles.get(stream)
            if handle is None:
                return
            handle.write(data)
            handle.flush()

    def close(self) -> None:
        with self._lock:
            for handle in self._handles.values():
                handle.close()
            self._handles.clear()

    def remove(self) -> None:
        self.close()
        for path in (self.stdout_path, self.stderr_path):
            path.unlink(missing_ok=True)


def read_log_lines(path: str | Path) -> list[str]:
    """Decoded lines of a log file; a missing file yields no lines."""

    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return []
    return data.decode("utf-8", errors="replace").splitlines()


__all__ = ["LogFiles", "log_paths", "read_log_lines"]
