"""
peerdrop transfer sessions: sender and receiver state machines.

SendSession
-----------
    Listens on the well-known port, accepts exactly one connection, checks
    the receiver's security code, then streams count → (name, size, body)*
    and waits for the single acknowledgment byte.

ReceiveSession
--------------
    Connects to the sender, presents the security code, reads the same
    framed stream and materialises each file under dest_dir, then sends the
    acknowledgment.

Both run synchronously in the calling thread and raise TransferError on any
failure. close() may be called from another thread to tear a running session
down; the blocked call then fails and run() raises TransferError(Cancelled).
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import threading
from contextlib import closing
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from .errors import ErrorKind, TransferError
from .events import Event, FileRecord, ProgressUpdate, StateChanged
from .integrity import FileDigest
from .protocol import (
    ACK_BYTE,
    ACK_TIMEOUT,
    AUTH_TIMEOUT,
    CONNECT_TIMEOUT,
    DEFAULT_PORT,
    IO_TIMEOUT,
    MAX_FILE_COUNT,
    MAX_NAME_BYTES,
    RECV_CHUNK_BYTES,
    SEND_CHUNK_BYTES,
    FrameReader,
    FrameWriter,
    encode_ack,
    encode_code,
    encode_count,
    encode_file_header,
    generate_code,
)
from .throughput import ProgressEvent, ThroughputTracker
from .transfer import FileEntry, chunk_file, destination_path

log = logging.getLogger("peerdrop.session")

ACCEPT_POLL: float = 0.5     # seconds between cancellation checks while listening

EventSink = Callable[[Event], None]


class SenderState(str, Enum):
    LISTENING        = "Listening"
    CONNECTED        = "Connected"
    AUTHENTICATING   = "Authenticating"
    SENDING_METADATA = "SendingMetadata"
    SENDING_BODY     = "SendingBody"
    AWAITING_ACK     = "AwaitingAck"
    DONE             = "Done"
    ERROR            = "Error"


class ReceiverState(str, Enum):
    CONNECTING     = "Connecting"
    AUTHENTICATED  = "Authenticated"
    READING_HEADER = "ReadingHeader"
    RECEIVING_BODY = "ReceivingBody"
    ACKNOWLEDGING  = "Acknowledging"
    DONE           = "Done"
    ERROR          = "Error"


def _discard(event: Event) -> None:
    pass


def _shutdown(sock: socket.socket) -> None:
    # shutdown() wakes a recv()/accept() blocked in another thread; close() alone does not.
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class _Session:
    """Connection ownership, state reporting and cancellation shared by both roles."""

    role = "session"

    def __init__(
        self,
        on_event: EventSink | None,
        tracker: ThroughputTracker | None,
        chunk_size: int,
    ) -> None:
        self._emit = on_event or _discard
        self._tracker = tracker or ThroughputTracker()
        self._chunk_size = chunk_size
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._reader: FrameReader | None = None
        self._writer: FrameWriter | None = None
        self.state: Enum | None = None

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Tear the session down. Safe to call from any thread, more than once."""
        self._cancelled.set()
        self._close_sockets()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _attach(self, sock: socket.socket) -> None:
        with self._lock:
            self._sock = sock
            self._reader = FrameReader(sock, bufsize=max(self._chunk_size, RECV_CHUNK_BYTES))
            self._writer = FrameWriter(sock, threshold=self._chunk_size)
        if self._cancelled.is_set():
            raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")

    def _close_sockets(self) -> None:
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            _shutdown(sock)

    def _set_state(self, state: Enum, detail: str = "") -> None:
        self.state = state
        log.debug("%s → %s %s", self.role, state.value, detail)
        self._emit(StateChanged(state=state.value, detail=detail))

    def _progress(self, event: ProgressEvent | None) -> None:
        if event is not None:
            self._emit(ProgressUpdate(event))

    def _abort(self, exc: TransferError, error_state: Enum) -> TransferError:
        if self._cancelled.is_set() and exc.kind is not ErrorKind.CANCELLED:
            exc = TransferError(ErrorKind.CANCELLED, "transfer cancelled")
        if exc.kind is ErrorKind.CANCELLED:
            log.info("%s cancelled", self.role)
        else:
            log.error("%s failed: %s", self.role, exc)
        self._set_state(error_state, str(exc))
        return exc


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

class SendSession(_Session):
    """
    Serve one batch to the first receiver that connects with the right code.
    The listening socket is single-use: it is closed as soon as one
    connection has been accepted.
    """

    role = "sender"

    def __init__(
        self,
        entries: Sequence[FileEntry],
        code: int | None = None,
        *,
        host: str = "",
        port: int = DEFAULT_PORT,
        chunk_size: int = SEND_CHUNK_BYTES,
        accept_timeout: float | None = None,
        auth_timeout: float = AUTH_TIMEOUT,
        io_timeout: float = IO_TIMEOUT,
        ack_timeout: float = ACK_TIMEOUT,
        on_event: EventSink | None = None,
        tracker: ThroughputTracker | None = None,
    ) -> None:
        if not entries:
            raise ValueError("A batch needs at least one file")
        super().__init__(on_event, tracker, chunk_size)
        self.code = generate_code() if code is None else code
        self._entries = list(entries)
        self._host = host
        self._port = port
        self._accept_timeout = accept_timeout
        self._auth_timeout = auth_timeout
        self._io_timeout = io_timeout
        self._ack_timeout = ack_timeout
        self._listener: socket.socket | None = None
        self.address: tuple[str, int] | None = None
        self.peer: tuple[str, int] | None = None

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def bind(self) -> tuple[str, int]:
        """Open the listening socket (idempotent) and return its address."""
        with self._lock:
            if self._cancelled.is_set():
                raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")
            if self.address is not None:
                if self._listener is None:
                    raise TransferError(ErrorKind.CANCELLED, "listener already closed")
                return self.address
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((self._host, self._port))
            listener.listen(1)
            host, port = listener.getsockname()[:2]
        except OSError as exc:
            listener.close()
            raise TransferError(ErrorKind.CONNECT_FAILED,
                                f"cannot listen on port {self._port}: {exc}") from exc
        with self._lock:
            if self._cancelled.is_set():
                listener.close()
                raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")
            self._listener = listener
            self.address = (host, port)
        log.info("Listening on %s:%d", host or "0.0.0.0", port)
        self._set_state(SenderState.LISTENING, f"port {port}")
        return self.address

    def run(self) -> list[FileRecord]:
        """Execute the full send. Raises TransferError on any failure."""
        try:
            self.bind()
            self._accept()
            self._authenticate()
            records = self._send_batch()
            self._await_ack()
        except TransferError as exc:
            raise self._abort(exc, SenderState.ERROR)
        except Exception as exc:
            log.error("sender crashed", exc_info=True)
            raise self._abort(TransferError(ErrorKind.INTERNAL, str(exc)),
                              SenderState.ERROR) from exc
        finally:
            self._close_sockets()
        log.info("Session complete — %d file(s) sent", len(records))
        self._set_state(SenderState.DONE)
        return records

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _close_sockets(self) -> None:
        with self._lock:
            listener, self._listener = self._listener, None
        if listener is not None:
            _shutdown(listener)
        super()._close_sockets()

    def _accept(self) -> None:
        with self._lock:
            listener = self._listener
        if listener is None:
            raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")
        waited = 0.0
        listener.settimeout(ACCEPT_POLL)
        while True:
            if self._cancelled.is_set():
                raise TransferError(ErrorKind.CANCELLED, "transfer cancelled")
            try:
                conn, addr = listener.accept()
                break
            except TimeoutError:
                waited += ACCEPT_POLL
                if self._accept_timeout is not None and waited >= self._accept_timeout:
                    raise TransferError(
                        ErrorKind.CONNECT_FAILED,
                        f"no receiver connected within {self._accept_timeout:.0f}s",
                    ) from None
            except OSError as exc:
                raise TransferError(ErrorKind.CONNECT_FAILED, f"accept failed: {exc}") from exc

        # Single connection per session: stop listening before anything else.
        with self._lock:
            listener, self._listener = self._listener, None
        if listener is not None:
            _shutdown(listener)

        self.peer = (addr[0], addr[1])
        log.info("Receiver connected from %s:%d", *self.peer)
        self._attach(conn)
        self._set_state(SenderState.CONNECTED, f"{addr[0]}:{addr[1]}")

    def _authenticate(self) -> None:
        assert self._reader is not None
        self._set_state(SenderState.AUTHENTICATING)
        presented = self._reader.read_int32(self._auth_timeout)
        if presented != self.code:
            log.warning("Rejected receiver %s: wrong security code", self.peer[0] if self.peer else "?")
            raise TransferError(ErrorKind.AUTHENTICATION_FAILED,
                                "receiver presented a wrong security code")
        log.debug("Security code accepted")

    def _send_batch(self) -> list[FileRecord]:
        assert self._writer is not None
        total = sum(e.size for e in self._entries)
        self._tracker.begin(len(self._entries), total)
        self._writer.write(encode_count(len(self._entries)), self._io_timeout)
        return [self._send_file(idx, entry) for idx, entry in enumerate(self._entries)]

    def _send_file(self, idx: int, entry: FileEntry) -> FileRecord:
        assert self._writer is not None
        count = len(self._entries)
        log.info("Sending [%d/%d] %s (%d bytes)", idx + 1, count, entry.name, entry.size)

        self._set_state(SenderState.SENDING_METADATA, f"{idx + 1}/{count}: {entry.name}")
        try:
            header = encode_file_header(entry.name, entry.size)
        except ValueError as exc:
            raise TransferError(ErrorKind.INVALID_FRAME, str(exc)) from exc
        self._writer.write(header, self._io_timeout)

        self._set_state(SenderState.SENDING_BODY, f"{idx + 1}/{count}: {entry.name}")
        digest = FileDigest()
        self._progress(self._tracker.start_file(idx, entry.name, entry.size))
        with closing(chunk_file(entry.path, entry.size, self._chunk_size)) as blocks:
            for block in blocks:
                digest.update(block)
                self._writer.write(block, self._io_timeout)
                self._progress(self._tracker.update(len(block)))
        self._writer.flush(self._io_timeout)
        self._progress(self._tracker.finish_file())

        log.debug("Sent %s blake3=%s", entry.name, digest.hexdigest())
        return FileRecord(name=entry.name, size=entry.size, digest=digest.hexdigest())

    def _await_ack(self) -> None:
        assert self._reader is not None
        self._set_state(SenderState.AWAITING_ACK)
        try:
            ack = self._reader.read_exact(1, self._ack_timeout)
        except TransferError as exc:
            raise TransferError(ErrorKind.ACK_TIMEOUT,
                                f"receiver never acknowledged ({exc.message})") from exc
        if ack != ACK_BYTE:
            raise TransferError(ErrorKind.INVALID_FRAME, f"unexpected acknowledgment {ack!r}")
        log.debug("Acknowledgment received")


# ---------------------------------------------------------------------------
# Receiver
# ---------------------------------------------------------------------------

class ReceiveSession(_Session):
    """
    Fetch one batch from a sender into *dest_dir*.

    Files are written chunk by chunk as they arrive. If the session fails
    mid-file, that partial file is deleted unless keep_partial is set; files
    completed before the failure are kept.
    """

    role = "receiver"

    def __init__(
        self,
        host: str,
        code: int,
        dest_dir: str | Path,
        *,
        port: int = DEFAULT_PORT,
        chunk_size: int = RECV_CHUNK_BYTES,
        connect_timeout: float = CONNECT_TIMEOUT,
        io_timeout: float = IO_TIMEOUT,
        keep_partial: bool = False,
        on_event: EventSink | None = None,
        tracker: ThroughputTracker | None = None,
    ) -> None:
        super().__init__(on_event, tracker, chunk_size)
        self._code_frame = encode_code(code)
        self._host = host
        self._port = port
        self._dest_dir = Path(dest_dir)
        self._connect_timeout = connect_timeout
        self._io_timeout = io_timeout
        self._keep_partial = keep_partial
        self._partial: Path | None = None

    def run(self) -> list[FileRecord]:
        """Execute the full receive. Raises TransferError on any failure."""
        try:
            self._connect()
            self._authenticate()
            count = self._read_count()
            records = [self._receive_file(idx, count) for idx in range(count)]
            self._acknowledge()
        except TransferError as exc:
            raise self._abort(exc, ReceiverState.ERROR)
        except Exception as exc:
            log.error("receiver crashed", exc_info=True)
            raise self._abort(TransferError(ErrorKind.INTERNAL, str(exc)),
                              ReceiverState.ERROR) from exc
        finally:
            self._close_sockets()
        log.info("Session complete — %d file(s) saved to %s", len(records), self._dest_dir)
        self._set_state(ReceiverState.DONE)
        return records

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _abort(self, exc: TransferError, error_state: Enum) -> TransferError:
        partial, self._partial = self._partial, None
        if partial is not None and not self._keep_partial:
            try:
                partial.unlink(missing_ok=True)
                log.info("Removed partial file %s", partial)
            except OSError as err:
                log.warning("Could not remove partial file %s: %s", partial, err)
        return super()._abort(exc, error_state)

    def _connect(self) -> None:
        self._set_state(ReceiverState.CONNECTING, f"{self._host}:{self._port}")
        try:
            self._dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TransferError(ErrorKind.IO_FAILURE,
                                f"cannot create {self._dest_dir}: {exc}") from exc
        try:
            sock = socket.create_connection((self._host, self._port),
                                            timeout=self._connect_timeout)
        except OSError as exc:
            raise TransferError(ErrorKind.CONNECT_FAILED,
                                f"cannot connect to {self._host}:{self._port}: {exc}") from exc
        log.info("Connected to %s:%d", self._host, self._port)
        self._attach(sock)

    def _authenticate(self) -> None:
        assert self._writer is not None
        self._writer.write(self._code_frame, self._io_timeout)
        self._writer.flush(self._io_timeout)
        self._set_state(ReceiverState.AUTHENTICATED)

    def _read_count(self) -> int:
        assert self._reader is not None
        try:
            count = self._reader.read_int32(self._io_timeout)
        except TransferError as exc:
            if exc.kind is ErrorKind.STREAM_CLOSED_PREMATURELY:
                raise TransferError(
                    ErrorKind.AUTHENTICATION_FAILED,
                    "sender closed the connection; the security code was not accepted",
                ) from exc
            raise
        if not 1 <= count <= MAX_FILE_COUNT:
            raise TransferError(ErrorKind.INVALID_FRAME, f"implausible file count {count}")
        log.info("Sender offers %d file(s)", count)
        self._tracker.begin(count)
        return count

    def _receive_file(self, idx: int, count: int) -> FileRecord:
        assert self._reader is not None
        self._set_state(ReceiverState.READING_HEADER, f"{idx + 1}/{count}")

        name_len = self._reader.read_int16(self._io_timeout)
        if not 1 <= name_len <= MAX_NAME_BYTES:
            raise TransferError(ErrorKind.INVALID_FRAME, f"implausible name length {name_len}")
        name = self._reader.read_name(name_len, self._io_timeout)
        dest = destination_path(self._dest_dir, name)
        size = self._reader.read_int64(self._io_timeout)
        if size < 0:
            raise TransferError(ErrorKind.INVALID_FRAME, f"negative size {size} for {name!r}")
        self._check_space(dest, size)

        log.info("Receiving [%d/%d] %s (%d bytes)", idx + 1, count, name, size)
        self._set_state(ReceiverState.RECEIVING_BODY, f"{idx + 1}/{count}: {name}")
        digest = FileDigest()
        try:
            fh = open(dest, "wb")
        except OSError as exc:
            raise TransferError(ErrorKind.IO_FAILURE, f"cannot create {dest}: {exc}") from exc
        self._partial = dest
        try:
            with fh:
                self._progress(self._tracker.start_file(idx, name, size))
                remaining = size
                while remaining > 0:
                    block = self._reader.read_some(min(self._chunk_size, remaining),
                                                   self._io_timeout)
                    fh.write(block)
                    digest.update(block)
                    remaining -= len(block)
                    self._progress(self._tracker.update(len(block)))
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise TransferError(ErrorKind.IO_FAILURE, f"cannot write {dest}: {exc}") from exc
        self._partial = None
        self._progress(self._tracker.finish_file())

        log.debug("Saved %s blake3=%s", dest, digest.hexdigest())
        return FileRecord(name=name, size=size, digest=digest.hexdigest())

    def _check_space(self, dest: Path, size: int) -> None:
        try:
            free = shutil.disk_usage(self._dest_dir).free
            if dest.exists():
                free += dest.stat().st_size
        except OSError as exc:
            raise TransferError(ErrorKind.IO_FAILURE,
                                f"cannot inspect {self._dest_dir}: {exc}") from exc
        if size > free:
            raise TransferError(ErrorKind.IO_FAILURE,
                                f"{dest.name} needs {size} bytes, only {free} free")

    def _acknowledge(self) -> None:
        assert self._writer is not None
        self._set_state(ReceiverState.ACKNOWLEDGING)
        self._writer.write(encode_ack(), self._io_timeout)
        self._writer.flush(self._io_timeout)
        log.debug("Acknowledgment sent")
