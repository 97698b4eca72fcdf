"""Bounded, thread-safe output buffers for a single run."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import replace
from typing import Callable

from .entries import LogEntry, line_to_entry


class RingBuffer:
    """Fixed-capacity buffer of raw output lines; the oldest line is evicted first."""

    def __init__(self, capacity: int = 10000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._lines: deque[str] = deque(maxlen=capacity)
        self._capacity = capacity
        self._written = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._written += 1

    def lines(self) -> list[str]:
        """Snapshot of the current window, oldest first."""

        with self._lock:
            return list(self._lines)

    def tail(self, n: int) -> list[str]:
        if n <= 0:
            return []
        with self._lock:
            count = len(self._lines)
            start = max(0, count - n)
            return [self._lines[index] for index in range(start, count)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    @property
    def total_written(self) -> int:
        with self._lock:
            return self._written

    @property
    def total_evicted(self) -> int:
        with self._lock:
            return self._written - len(self._lines)

    def reset(self) -> None:
        with self._lock:
            self._lines.clear()
            self._written = 0


class EntryBuffer:
    """Fixed-capacity buffer of structured entries.

    ``total_evicted`` only ever grows, so a consumer holding an index can
    rebase it by subtracting the change since it last looked.
    """

    def __init__(self, capacity: int = 5000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._capacity = capacity
        self._evicted = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            if len(self._entries) == self._capacity:
                self._evicted += 1
            self._entries.append(entry)

    def update_last(self, fn: Callable[[LogEntry], None]) -> bool:
        """Apply ``fn`` to the most recent entry; returns ``False`` when empty."""

        with self._lock:
            if not self._entries:
                return False
            fn(self._entries[-1])
            return True

    def attach_detail(self, text: str) -> bool:
        """Append ``text`` to the detail of the most recent entry."""

        def _attach(entry: LogEntry) -> None:
            entry.detail = f"{entry.detail}\n{text}" if entry.detail else text

        return self.update_last(_attach)

    def entries(self) -> list[LogEntry]:
        """Snapshot copies of all entries, oldest first."""

        with self._lock:
            return [replace(entry) for entry in self._entries]

    def get(self, index: int) -> LogEntry | None:
        """Entry at logical ``index`` (0 is the oldest retained), or ``None``."""

        with self._lock:
            if index < 0 or index >= len(self._entries):
                return None
            return replace(self._entries[index])

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_evicted(self) -> int:
        with self._lock:
            return self._evicted


class RunOutput:
    """Raw and structured views over one run's output stream.

    Every line goes to the ring buffer; its entry, when there is one, goes to
    the entry buffer at the same time.
    """

    def __init__(self, ring_capacity: int = 10000, entry_capacity: int = 5000) -> None:
        self.ring = RingBuffer(ring_capacity)
        self.entries = EntryBuffer(entry_capacity)
        self._lock = threading.Lock()

    def append(self, line: str, entry: LogEntry | None = None) -> None:
        with self._lock:
            self.ring.append(line)
            if entry is not None:
                self.entries.append(entry)

    def append_line(self, line: str) -> None:
        """Append a pre-formatted line, deriving its entry from the text."""

        self.append(line, line_to_entry(line))

    def attach_detail(self, text: str) -> None:
        with self._lock:
            self.entries.attach_detail(text)

    @property
    def has_output(self) -> bool:
        return self.ring.total_written > 0


__all__ = ["EntryBuffer", "RingBuffer", "RunOutput"]
