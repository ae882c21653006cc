"""
Progress rendering — rich live progress bars fed by ProgressEvents.

Usage::

    view = ProgressView(peer_name="192.168.1.20", direction="↑ SEND")
    view.start()
    for event in handle.events():
        if isinstance(event, ProgressUpdate):
            view.show(event.progress)
    view.stop()
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)

from .throughput import ProgressEvent, format_rate


class ProgressView:
    """One live bar per file, replaced when the next file starts."""

    def __init__(self, peer_name: str, direction: str = "→") -> None:
        self.peer_name = peer_name
        self.direction = direction
        self._task_id: TaskID | None = None
        self._file_index: int | None = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn(
                f"[bold cyan]{direction}[/] [bold]{peer_name}[/]"
                " ([progress.percentage]{task.percentage:>5.1f}%)"
            ),
            BarColumn(bar_width=None),
            DownloadColumn(),
            TextColumn("{task.fields[rate]}"),
            TimeRemainingColumn(),
            TextColumn("[dim]{task.fields[label]}"),
            console=Console(stderr=True),
            expand=True,
        )

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    def show(self, event: ProgressEvent) -> None:
        if event.file_index != self._file_index or self._task_id is None:
            if self._task_id is not None:
                self._progress.remove_task(self._task_id)
            self._file_index = event.file_index
            self._task_id = self._progress.add_task(
                "transfer",
                total=max(event.size, 1),
                rate="",
                label=event.label,
            )
        completed = event.bytes_done if event.size else (1 if event.fraction >= 1.0 else 0)
        self._progress.update(
            self._task_id,
            completed=completed,
            rate=format_rate(event.rate),
            label=event.label,
        )


class NullProgress:
    """Drop-in no-op replacement when --quiet is set."""

    def start(self) -> None: ...
    def stop(self) -> None: ...
    def show(self, event: ProgressEvent) -> None: ...
