"""
Session controller — the UI-facing side of the transfer engine.

Owns at most one active session. Starting a send or receive tears down any
session still running, spawns a TransferWorker for the new one and hands back
a SessionHandle. The controller never touches a socket itself; it only reads
events and mirrors them into a SessionStatus the presentation layer can show.

Usage::

    ctl = SessionController()
    handle = ctl.start_sending(build_batch(["photo.jpg"]))
    print(local_address(), handle.code)
    for event in handle.events():
        ...
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Sequence

from .events import (
    ErrorOccurred,
    Event,
    ProgressUpdate,
    StateChanged,
    TransferCompleted,
    is_terminal,
)
from .protocol import (
    ACK_TIMEOUT,
    AUTH_TIMEOUT,
    CONNECT_TIMEOUT,
    DEFAULT_PORT,
    IO_TIMEOUT,
    generate_code,
)
from .session import ReceiveSession, SendSession
from .throughput import PROGRESS_INTERVAL, ProgressEvent, ThroughputTracker
from .transfer import FileEntry
from .worker import JOIN_TIMEOUT, POLL_INTERVAL, TransferWorker

log = logging.getLogger("peerdrop.controller")


class Role(str, Enum):
    SEND    = "send"
    RECEIVE = "receive"


class Phase(str, Enum):
    IDLE         = "idle"
    TRANSFERRING = "transferring"
    SUCCESS      = "success"
    ERROR        = "error"


@dataclass
class SessionStatus:
    """Read-only mirror of a session, rebuilt from the events it emitted."""

    role: Role | None = None
    phase: Phase = Phase.IDLE
    state: str = ""
    detail: str = ""
    progress: ProgressEvent | None = None
    error: ErrorOccurred | None = None
    result: TransferCompleted | None = None

    def apply(self, event: Event) -> None:
        if isinstance(event, StateChanged):
            self.state = event.state
            self.detail = event.detail
        elif isinstance(event, ProgressUpdate):
            self.progress = event.progress
        elif isinstance(event, ErrorOccurred):
            self.phase = Phase.ERROR
            self.error = event
        elif isinstance(event, TransferCompleted):
            self.phase = Phase.SUCCESS
            self.result = event


@dataclass(eq=False)
class SessionHandle:
    id: int
    role: Role
    worker: TransferWorker
    code: int
    address: tuple[str, int]
    status: SessionStatus = field(default_factory=SessionStatus)
    on_finish: Callable[[SessionHandle], None] | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status.phase in (Phase.SUCCESS, Phase.ERROR)

    def next_event(self, timeout: float | None = None) -> Event | None:
        event = self.worker.next_event(timeout)
        if event is not None:
            self.status.apply(event)
            if is_terminal(event) and self.on_finish is not None:
                self.on_finish(self)
        return event

    def events(self) -> Iterator[Event]:
        """Yield events in order until the terminal one (inclusive)."""
        while not self.done:
            event = self.next_event(POLL_INTERVAL)
            if event is not None:
                yield event
            elif self.worker.finished and self.worker.events.empty():
                if self.on_finish is not None:
                    self.on_finish(self)
                return

    def wait(self, timeout: float | None = None) -> SessionStatus:
        """Block until the session ends (or *timeout*), consuming events."""
        for _ in self.events():
            pass
        self.worker.join(timeout)
        return self.status


class SessionController:
    """
    Start, watch and cancel transfer sessions, one at a time.

    Keyword options are passed on to the engines: port, host (sender bind
    address), accept/auth/connect/io/ack timeouts, keep_partial and the
    progress event interval.
    """

    def __init__(
        self,
        *,
        port: int = DEFAULT_PORT,
        host: str = "",
        accept_timeout: float | None = None,
        auth_timeout: float = AUTH_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
        io_timeout: float = IO_TIMEOUT,
        ack_timeout: float = ACK_TIMEOUT,
        keep_partial: bool = False,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self.port = port
        self.host = host
        self._accept_timeout = accept_timeout
        self._auth_timeout = auth_timeout
        self._connect_timeout = connect_timeout
        self._io_timeout = io_timeout
        self._ack_timeout = ack_timeout
        self._keep_partial = keep_partial
        self._progress_interval = progress_interval
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._active: SessionHandle | None = None
        self._last: SessionStatus = SessionStatus()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    @property
    def active(self) -> SessionHandle | None:
        return self._active

    @property
    def status(self) -> SessionStatus:
        """Mirror of the active session, or of the last one once idle."""
        active = self._active
        return active.status if active is not None else self._last

    def start_sending(
        self,
        entries: Sequence[FileEntry],
        code: int | None = None,
    ) -> SessionHandle:
        """
        Bind the listening port and start serving *entries* on a worker.

        The port is bound before this returns so the caller can display the
        address and code; a bind failure raises TransferError here.
        """
        code = generate_code() if code is None else code
        self._replace()
        worker = TransferWorker(
            lambda emit: SendSession(
                entries,
                code,
                host=self.host,
                port=self.port,
                accept_timeout=self._accept_timeout,
                auth_timeout=self._auth_timeout,
                io_timeout=self._io_timeout,
                ack_timeout=self._ack_timeout,
                on_event=emit,
                tracker=ThroughputTracker(self._progress_interval),
            ),
            name="peerdrop-send",
        )
        address = worker.engine.bind()
        handle = self._launch(Role.SEND, worker, code, address)
        log.info("Session %d: sending %d file(s) on port %d", handle.id, len(entries), address[1])
        return handle

    def start_receiving(
        self,
        address: str,
        code: int,
        dest_dir: str | Path,
    ) -> SessionHandle:
        """Connect to *address* (``host`` or ``host:port``) on a worker and save into *dest_dir*."""
        host, port = self._split_address(address)
        self._replace()
        worker = TransferWorker(
            lambda emit: ReceiveSession(
                host,
                code,
                dest_dir,
                port=port,
                connect_timeout=self._connect_timeout,
                io_timeout=self._io_timeout,
                keep_partial=self._keep_partial,
                on_event=emit,
                tracker=ThroughputTracker(self._progress_interval),
            ),
            name="peerdrop-recv",
        )
        handle = self._launch(Role.RECEIVE, worker, code, (host, port))
        log.info("Session %d: receiving from %s:%d into %s", handle.id, host, port, dest_dir)
        return handle

    def cancel(self, handle: SessionHandle | None = None) -> None:
        """Tear down *handle* (default: the active session) and go idle."""
        with self._lock:
            target = handle or self._active
            if target is None:
                return
            if target is self._active:
                self._last = target.status
                self._active = None
        log.info("Session %d: cancelling", target.id)
        self._stop(target)

    def poll(self) -> list[Event]:
        """
        Drain the active session's queued events without blocking and update
        its status. Once a terminal event is seen the controller is idle again.
        """
        active = self._active
        if active is None:
            return []
        events: list[Event] = []
        while True:
            event = active.next_event(0)
            if event is None:
                break
            events.append(event)
            if is_terminal(event):
                break
        return events

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _split_address(self, address: str) -> tuple[str, int]:
        host, sep, port = address.strip().rpartition(":")
        if not sep or not host or ":" in host:
            return address.strip(), self.port
        if not port.isdigit():
            raise ValueError(f"Invalid port in address {address!r}")
        return host, int(port)

    def _stop(self, handle: SessionHandle) -> None:
        # The old engine may still delete its partial file; it must be gone
        # before a new session writes into the same directory.
        handle.worker.cancel()
        if not handle.worker.join(JOIN_TIMEOUT):
            log.warning("Session %d: worker still running after %.0fs",
                        handle.id, JOIN_TIMEOUT)

    def _release(self, handle: SessionHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._last = handle.status
                self._active = None

    def _replace(self) -> None:
        with self._lock:
            previous, self._active = self._active, None
            if previous is not None:
                self._last = previous.status
        if previous is not None:
            log.info("Session %d: replaced by a new session", previous.id)
            self._stop(previous)

    def _launch(
        self,
        role: Role,
        worker: TransferWorker,
        code: int,
        address: tuple[str, int],
    ) -> SessionHandle:
        handle = SessionHandle(
            id=next(self._ids),
            role=role,
            worker=worker,
            code=code,
            address=address,
            status=SessionStatus(role=role, phase=Phase.TRANSFERRING),
            on_finish=self._release,
        )
        with self._lock:
            self._active = handle
        worker.start()
        return handle
