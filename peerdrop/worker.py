"""
Worker threads — run one engine off the interactive thread.

The engine only ever talks to the outside through the worker's event queue:
an ordered, bounded, one-way channel of immutable event values. The owner
of the worker reads from the queue and may call cancel(); nothing else
crosses the boundary.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Protocol

from .errors import ErrorKind, TransferError
from .events import ErrorOccurred, Event, FileRecord, TransferCompleted

log = logging.getLogger("peerdrop.worker")

EVENT_QUEUE_SIZE: int = 256
POLL_INTERVAL: float = 0.1
JOIN_TIMEOUT: float = 5.0       # seconds to wait for a cancelled worker to exit


class Engine(Protocol):
    def run(self) -> list[FileRecord]: ...
    def close(self) -> None: ...


class TransferWorker:
    """
    Owns one engine and the daemon thread that runs it.

    *make_engine* receives the callback the engine must use to emit events.
    Every run ends with exactly one terminal event on ``events``.
    """

    def __init__(
        self,
        make_engine: Callable[[Callable[[Event], None]], Engine],
        name: str = "peerdrop-worker",
        maxsize: int = EVENT_QUEUE_SIZE,
    ) -> None:
        self.events: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self.engine = make_engine(self._post)
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Close the engine's sockets; the run ends with a Cancelled error."""
        self._cancelled.set()
        self.engine.close()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread to exit. Returns True if it has."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def name(self) -> str:
        return self._thread.name

    def next_event(self, timeout: float | None = None) -> Event | None:
        """Next queued event, or None if none arrived within *timeout*."""
        try:
            if timeout == 0:
                return self.events.get_nowait()
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _post(self, event: Event) -> None:
        while not self._cancelled.is_set():
            try:
                self.events.put(event, timeout=POLL_INTERVAL)
                return
            except queue.Full:
                continue
        # Cancelled: nobody may be reading any more, so never block.
        try:
            self.events.put_nowait(event)
        except queue.Full:
            log.debug("%s: dropping %s, queue full after cancel",
                      self.name, type(event).__name__)

    def _run(self) -> None:
        t0 = time.monotonic()
        try:
            records = self.engine.run()
        except TransferError as exc:
            self._post(ErrorOccurred(kind=exc.kind, message=exc.message))
        except Exception as exc:
            log.error("Unexpected error in %s: %s", self.name, exc, exc_info=True)
            self._post(ErrorOccurred(kind=ErrorKind.INTERNAL, message=str(exc)))
        else:
            self._post(TransferCompleted(
                files=tuple(records),
                total_bytes=sum(r.size for r in records),
                elapsed=time.monotonic() - t0,
            ))
        finally:
            self._finished.set()
            log.debug("%s exited", self.name)
