"""Shared pytest fixtures for all tests."""

from __future__ import annotations

import socket
import threading

import pytest

from peerdrop.errors import TransferError
from peerdrop.transfer import entry_for


class SessionThread(threading.Thread):
    """Runs a session's run() in the background and keeps the outcome."""

    def __init__(self, session) -> None:
        super().__init__(daemon=True)
        self.session = session
        self.result = None
        self.error: TransferError | None = None

    def run(self) -> None:
        try:
            self.result = self.session.run()
        except TransferError as exc:
            self.error = exc

    def finish(self, timeout: float = 10.0) -> "SessionThread":
        self.join(timeout)
        assert not self.is_alive(), "session did not finish"
        return self


@pytest.fixture
def in_thread():
    """Start session.run() on a background thread."""
    started: list[SessionThread] = []

    def _start(session) -> SessionThread:
        t = SessionThread(session)
        t.start()
        started.append(t)
        return t

    yield _start
    for t in started:
        t.session.close()
        t.join(5)


@pytest.fixture
def make_batch(tmp_path):
    """
    Write files into tmp_path/src and return them as a batch.

    Args:
        layout: list of (name, content bytes) pairs, in batch order
    """
    src = tmp_path / "src"
    src.mkdir()

    def _make(layout: list[tuple[str, bytes]]):
        entries = []
        for name, content in layout:
            path = src / name
            path.write_bytes(content)
            entries.append(entry_for(path))
        return entries

    return _make


@pytest.fixture
def dest_dir(tmp_path):
    d = tmp_path / "dest"
    d.mkdir()
    return d


@pytest.fixture
def free_port():
    """A loopback port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def fake_peer():
    """
    Run *handler(conn)* against one connection on a loopback listener.

    Returns (port, thread); the thread stores any handler exception in
    thread.exc so tests can assert on it.
    """
    listeners: list[socket.socket] = []

    def _serve(handler):
        srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        srv.bind(("127.0.0.1", 0))
        srv.listen(1)
        srv.settimeout(10)
        listeners.append(srv)

        def _run():
            try:
                conn, _ = srv.accept()
                with conn:
                    conn.settimeout(10)
                    handler(conn)
            except Exception as exc:  # surfaced through thread.exc
                t.exc = exc

        t = threading.Thread(target=_run, daemon=True)
        t.exc = None
        t.start()
        return srv.getsockname()[1], t

    yield _serve
    for srv in listeners:
        srv.close()


def recv_exactly(conn: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = conn.recv(n - len(buf))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)
