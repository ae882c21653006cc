"""
Throughput tracking — byte counters → rate-limited progress events.

Usage::

    tracker = ThroughputTracker()
    tracker.begin(file_count=3, total_bytes=10_000)

    tracker.start_file(0, "video.mp4", size=4096)
    for chunk in ...:
        event = tracker.update(len(chunk))
        if event is not None:
            emit(event)
    emit(tracker.finish_file())

Knows nothing about sockets; the clock is injectable for tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

PROGRESS_INTERVAL: float = 0.25     # seconds between emitted events


@dataclass(frozen=True)
class ProgressEvent:
    fraction: float          # current file, 0.0–1.0
    overall: float           # whole batch, 0.0–1.0
    rate: float              # bytes/second within the current file
    label: str               # "file i/N: name"
    file_index: int
    file_count: int
    name: str
    bytes_done: int
    size: int


def format_rate(bytes_per_s: float) -> str:
    return f"{bytes_per_s / 1024 / 1024:.2f} MB/s"


def format_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} PB"


class ThroughputTracker:
    """Per-file byte counter and timer that emits at most one event per interval."""

    def __init__(
        self,
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._file_count = 0
        self._total_bytes: int | None = None
        self._batch_done = 0
        self._files_done = 0
        self._index = 0
        self._name = ""
        self._size = 0
        self._done = 0
        self._t0 = 0.0
        self._last_emit = 0.0

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def begin(self, file_count: int, total_bytes: int | None = None) -> None:
        """Start a batch. *total_bytes* is known by the sender only."""
        self._file_count = file_count
        self._total_bytes = total_bytes
        self._batch_done = 0
        self._files_done = 0

    def start_file(self, index: int, name: str, size: int) -> ProgressEvent:
        self._index = index
        self._name = name
        self._size = size
        self._done = 0
        self._t0 = self._last_emit = self._clock()
        return self._event()

    def update(self, n: int) -> ProgressEvent | None:
        """Count *n* more bytes; return an event only if the interval elapsed."""
        self._done += n
        self._batch_done += n
        now = self._clock()
        if now - self._last_emit < self._interval:
            return None
        self._last_emit = now
        return self._event()

    def finish_file(self) -> ProgressEvent:
        """Close the current file; the returned event always has fraction 1.0."""
        self._files_done += 1
        event = self._event(final=True)
        self._last_emit = self._clock()
        return event

    @property
    def fraction(self) -> float:
        if self._size <= 0:
            return 1.0
        return min(1.0, self._done / self._size)

    @property
    def rate(self) -> float:
        elapsed = self._clock() - self._t0
        if elapsed <= 0:
            return 0.0
        return self._done / elapsed

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _overall(self, fraction: float, final: bool) -> float:
        if self._total_bytes:
            return min(1.0, self._batch_done / self._total_bytes)
        if self._file_count <= 0:
            return 1.0
        completed = self._files_done if final else self._files_done + fraction
        return min(1.0, completed / self._file_count)

    def _event(self, final: bool = False) -> ProgressEvent:
        fraction = 1.0 if final else self.fraction
        return ProgressEvent(
            fraction=fraction,
            overall=self._overall(fraction, final),
            rate=self.rate,
            label=f"file {self._index + 1}/{self._file_count}: {self._name}",
            file_index=self._index,
            file_count=self._file_count,
            name=self._name,
            bytes_done=self._done,
            size=self._size,
        )
