from __future__ import annotations

import os
import time

import pytest
from conftest import recv_exactly

from peerdrop.controller import Phase, Role, SessionController
from peerdrop.errors import ErrorKind, TransferError
from peerdrop.events import ErrorOccurred, StateChanged, TransferCompleted, is_terminal
from peerdrop.protocol import encode_count, encode_file_header
from peerdrop.worker import TransferWorker


def _sending_controller():
    return SessionController(host="127.0.0.1", port=0, progress_interval=0)


def _collect(worker, timeout=5.0):
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = worker.next_event(0.1)
        if event is not None:
            events.append(event)
            if is_terminal(event):
                return events
    raise AssertionError(f"{worker.name} did not finish")


def test_send_and_receive_through_controllers(make_batch, dest_dir):
    entries = make_batch([("a.txt", b"hello"), ("photo.jpg", os.urandom(500_000))])
    send_ctl = _sending_controller()
    send = send_ctl.start_sending(entries)
    assert send.role is Role.SEND
    assert send_ctl.status.phase is Phase.TRANSFERRING

    recv_ctl = SessionController(port=send.address[1], io_timeout=5)
    recv = recv_ctl.start_receiving("127.0.0.1", send.code, dest_dir)

    recv_events = list(recv.events())
    send_status = send.wait(timeout=10)

    assert sum(is_terminal(e) for e in recv_events) == 1
    assert isinstance(recv_events[-1], TransferCompleted)
    assert recv.status.phase is Phase.SUCCESS
    assert send_status.phase is Phase.SUCCESS
    assert send_status.result.total_bytes == 5 + 500_000
    assert [f.digest for f in recv.status.result.files] == \
        [f.digest for f in send_status.result.files]
    assert (dest_dir / "photo.jpg").read_bytes() == entries[1].path.read_bytes()
    assert recv.status.progress.fraction == 1.0


def test_receive_with_host_and_port(make_batch, dest_dir):
    send_ctl = _sending_controller()
    send = send_ctl.start_sending(make_batch([("a.txt", b"hello")]))

    recv_ctl = SessionController(io_timeout=5)
    recv = recv_ctl.start_receiving(f"127.0.0.1:{send.address[1]}", send.code, dest_dir)
    assert recv.address == ("127.0.0.1", send.address[1])
    assert recv.wait(timeout=10).phase is Phase.SUCCESS
    assert send.wait(timeout=10).phase is Phase.SUCCESS


def test_wrong_code_surfaces_as_error_event(make_batch, dest_dir):
    send_ctl = _sending_controller()
    send = send_ctl.start_sending(make_batch([("a.txt", b"hello")]), code=123456)

    recv_ctl = SessionController(port=send.address[1], io_timeout=5)
    recv = recv_ctl.start_receiving("127.0.0.1", 654321, dest_dir)

    assert recv.wait(timeout=10).error.kind is ErrorKind.AUTHENTICATION_FAILED
    assert send.wait(timeout=10).error.kind is ErrorKind.AUTHENTICATION_FAILED


def test_new_session_replaces_the_active_one(make_batch):
    ctl = _sending_controller()
    first = ctl.start_sending(make_batch([("a.txt", b"a")]))
    second = ctl.start_sending(make_batch([("b.txt", b"b")]))

    assert ctl.active is second
    assert first.wait(timeout=5).error.kind is ErrorKind.CANCELLED
    assert first.worker.join(5)
    ctl.cancel()


def test_cancel_returns_to_idle(make_batch):
    ctl = _sending_controller()
    handle = ctl.start_sending(make_batch([("a.txt", b"a")]))
    ctl.cancel()

    assert ctl.active is None
    assert handle.wait(timeout=5).error.kind is ErrorKind.CANCELLED
    ctl.cancel()   # no active session: nothing to do


def test_poll_goes_idle_after_terminal_event(free_port, dest_dir):
    ctl = SessionController(port=free_port, connect_timeout=2)
    handle = ctl.start_receiving("127.0.0.1", 123456, dest_dir)

    seen = []
    deadline = time.monotonic() + 10
    while ctl.active is not None and time.monotonic() < deadline:
        seen.extend(ctl.poll())
        time.sleep(0.02)

    assert ctl.active is None
    assert isinstance(seen[0], StateChanged)
    assert isinstance(seen[-1], ErrorOccurred)
    assert seen[-1].kind is ErrorKind.CONNECT_FAILED
    assert ctl.status is handle.status
    assert ctl.status.phase is Phase.ERROR
    assert ctl.poll() == []


def test_start_sending_bind_failure_raises(make_batch):
    first = _sending_controller()
    running = first.start_sending(make_batch([("a.txt", b"a")]))
    try:
        other = SessionController(host="127.0.0.1", port=running.address[1])
        with pytest.raises(TransferError) as info:
            other.start_sending(make_batch([("b.txt", b"b")]))
        assert info.value.kind is ErrorKind.CONNECT_FAILED
        assert other.active is None
    finally:
        first.cancel()


def test_split_address():
    ctl = SessionController(port=4000)
    assert ctl._split_address("10.0.0.2") == ("10.0.0.2", 4000)
    assert ctl._split_address("10.0.0.2:5000") == ("10.0.0.2", 5000)
    with pytest.raises(ValueError):
        ctl._split_address("10.0.0.2:http")


class _ExplodingEngine:
    def __init__(self, emit):
        self.emit = emit

    def run(self):
        self.emit(StateChanged("Working"))
        raise RuntimeError("boom")

    def close(self):
        pass


class _StuckEngine:
    def __init__(self, emit):
        self.emit = emit
        self.closed = False

    def run(self):
        while not self.closed:
            self.emit(StateChanged("Spinning"))
        raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")

    def close(self):
        self.closed = True


def test_unexpected_exception_becomes_internal_error():
    worker = TransferWorker(_ExplodingEngine)
    worker.start()
    events = _collect(worker)
    assert events[0] == StateChanged("Working")
    assert events[-1] == ErrorOccurred(ErrorKind.INTERNAL, "boom")
    assert worker.join(5)


def test_cancel_never_blocks_on_a_full_queue():
    worker = TransferWorker(_StuckEngine, maxsize=4)
    worker.start()
    time.sleep(0.2)
    worker.cancel()
    assert worker.join(5)
    assert worker.events.qsize() <= 4


def test_repeated_cancel_always_reports_cancelled(make_batch):
    ctl = _sending_controller()
    entries = make_batch([("a.txt", b"a")])
    for _ in range(20):
        handle = ctl.start_sending(entries)
        ctl.cancel()
        assert handle.worker.finished
        assert handle.wait(timeout=5).error.kind is ErrorKind.CANCELLED


def test_cancel_by_handle_stops_the_worker_and_goes_idle(make_batch):
    ctl = _sending_controller()
    handle = ctl.start_sending(make_batch([("a.txt", b"a")]))
    ctl.cancel(handle)

    assert ctl.active is None
    assert handle.worker.finished
    assert ctl.status is handle.status


def test_waiting_on_a_handle_returns_the_controller_to_idle(free_port, dest_dir):
    ctl = SessionController(port=free_port, connect_timeout=2)
    handle = ctl.start_receiving("127.0.0.1", 123456, dest_dir)

    assert handle.wait(timeout=10).phase is Phase.ERROR
    assert ctl.active is None
    assert ctl.status is handle.status


def test_replacing_a_stalled_receive_keeps_the_new_file(fake_peer, make_batch, dest_dir):
    def stalled_sender(conn):
        recv_exactly(conn, 4)
        conn.sendall(encode_count(1) + encode_file_header("a.txt", 1000) + b"x")
        time.sleep(3)

    port, _ = fake_peer(stalled_sender)
    ctl = SessionController(port=port, io_timeout=10)
    stalled = ctl.start_receiving("127.0.0.1", 123456, dest_dir)
    deadline = time.monotonic() + 5
    while not (dest_dir / "a.txt").exists() and time.monotonic() < deadline:
        time.sleep(0.02)
    assert (dest_dir / "a.txt").exists()

    send_ctl = _sending_controller()
    send = send_ctl.start_sending(make_batch([("a.txt", b"hello")]))
    fresh = ctl.start_receiving(f"127.0.0.1:{send.address[1]}", send.code, dest_dir)

    assert stalled.worker.finished
    assert ctl.active is fresh
    assert fresh.wait(timeout=10).phase is Phase.SUCCESS
    assert send.wait(timeout=10).phase is Phase.SUCCESS
    assert stalled.wait(timeout=5).error.kind is ErrorKind.CANCELLED
    assert (dest_dir / "a.txt").read_bytes() == b"hello"
