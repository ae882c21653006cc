"""
peerdrop wire format — fixed-layout encode/decode.

Stream layout (TCP, all integers big-endian, no version field):

  receiver → sender   [code: 4B int32]
  sender → receiver   [file_count: 4B int32]
                      per file:
                        [name_len: 2B int16][name: UTF-8 name_len B]
                        [size: 8B int64][body: size B]
  receiver → sender   [ack: 1B = 0x01]

The body has no inner framing; it is streamed in chunks of whatever size the
transport delivers. FrameReader turns those arbitrarily sized pieces back into
exact-length frames.
"""

from __future__ import annotations

import secrets
import socket
import struct
import time

from .errors import ErrorKind, TransferError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CODE_FMT = struct.Struct("!i")
COUNT_FMT = struct.Struct("!i")
NAME_LEN_FMT = struct.Struct("!h")
SIZE_FMT = struct.Struct("!q")
ACK_BYTE: bytes = b"\x01"

DEFAULT_PORT: int = 12345
CODE_MIN: int = 100000
CODE_MAX: int = 999999

SEND_CHUNK_BYTES: int = 256 * 1024     # sender read size per body chunk
RECV_CHUNK_BYTES: int = 1024 * 1024    # receiver upper bound per body chunk
MAX_NAME_BYTES: int = 2 ** 15 - 1      # int16 limit
MAX_FILE_COUNT: int = 100_000

CONNECT_TIMEOUT: float = 15.0
AUTH_TIMEOUT: float = 20.0
IO_TIMEOUT: float = 30.0
ACK_TIMEOUT: float = 120.0


# ---------------------------------------------------------------------------
# Security code
# ---------------------------------------------------------------------------

def generate_code() -> int:
    """Return a fresh 6-digit security code."""
    return CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1)


def parse_code(text: str) -> int:
    """Parse a user-typed security code. Raises ValueError if it is not 6 digits."""
    text = text.strip()
    if len(text) != 6 or not text.isdigit():
        raise ValueError(f"Security code must be 6 digits, got {text!r}")
    code = int(text)
    if not CODE_MIN <= code <= CODE_MAX:
        raise ValueError(f"Security code out of range: {code}")
    return code


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def _pack(fmt: struct.Struct, value: int, what: str) -> bytes:
    try:
        return fmt.pack(value)
    except struct.error as exc:
        raise ValueError(f"{what} out of range: {value!r}") from exc


def encode_code(code: int) -> bytes:
    return _pack(CODE_FMT, code, "security code")


def encode_count(count: int) -> bytes:
    if count < 0:
        raise ValueError(f"file count must be non-negative, got {count}")
    return _pack(COUNT_FMT, count, "file count")


def encode_name(name: str) -> bytes:
    """Length-prefixed UTF-8 name."""
    raw = name.encode("utf-8")
    if len(raw) > MAX_NAME_BYTES:
        raise ValueError(f"file name is {len(raw)} bytes, limit is {MAX_NAME_BYTES}")
    return NAME_LEN_FMT.pack(len(raw)) + raw


def encode_size(size: int) -> bytes:
    if size < 0:
        raise ValueError(f"file size must be non-negative, got {size}")
    return _pack(SIZE_FMT, size, "file size")


def encode_file_header(name: str, size: int) -> bytes:
    return encode_name(name) + encode_size(size)


def encode_ack() -> bytes:
    return ACK_BYTE


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def decode_int32(raw: bytes) -> int:
    return COUNT_FMT.unpack(raw)[0]


def decode_int16(raw: bytes) -> int:
    return NAME_LEN_FMT.unpack(raw)[0]


def decode_int64(raw: bytes) -> int:
    return SIZE_FMT.unpack(raw)[0]


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + timeout


class FrameReader:
    """
    Pulls exact-length frames out of a connected stream socket.

    Bytes received beyond what the current frame needs stay in an internal
    buffer and are served first by the next call.
    """

    def __init__(self, sock: socket.socket, bufsize: int = RECV_CHUNK_BYTES) -> None:
        self._sock = sock
        self._bufsize = bufsize
        self._buf = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def read_exact(self, n: int, timeout: float | None = IO_TIMEOUT) -> bytes:
        """Block until exactly *n* bytes are available and return them."""
        if n < 0:
            raise ValueError(f"cannot read {n} bytes")
        deadline = _deadline(timeout)
        while len(self._buf) < n:
            self._fill(deadline)
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    def read_some(self, n: int, timeout: float | None = IO_TIMEOUT) -> bytes:
        """Return between 1 and *n* bytes, waiting only if nothing is buffered."""
        if n <= 0:
            return b""
        if not self._buf:
            self._fill(_deadline(timeout))
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    def read_int32(self, timeout: float | None = IO_TIMEOUT) -> int:
        return decode_int32(self.read_exact(4, timeout))

    def read_int16(self, timeout: float | None = IO_TIMEOUT) -> int:
        return decode_int16(self.read_exact(2, timeout))

    def read_int64(self, timeout: float | None = IO_TIMEOUT) -> int:
        return decode_int64(self.read_exact(8, timeout))

    def read_name(self, length: int, timeout: float | None = IO_TIMEOUT) -> str:
        raw = self.read_exact(length, timeout)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TransferError(ErrorKind.INVALID_FRAME,
                                f"file name is not valid UTF-8: {raw[:32]!r}") from exc

    def _fill(self, deadline: float | None) -> None:
        if deadline is None:
            remaining = None
        else:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransferError(ErrorKind.READ_TIMEOUT, "no data within the read timeout")
        try:
            self._sock.settimeout(remaining)
            chunk = self._sock.recv(self._bufsize)
        except TimeoutError as exc:
            raise TransferError(ErrorKind.READ_TIMEOUT,
                                "no data within the read timeout") from exc
        except OSError as exc:
            raise TransferError(ErrorKind.STREAM_CLOSED_PREMATURELY,
                                f"connection lost: {exc}") from exc
        if not chunk:
            raise TransferError(ErrorKind.STREAM_CLOSED_PREMATURELY,
                                "connection closed by peer")
        self._buf.extend(chunk)


class FrameWriter:
    """
    Buffers small frames and pushes them with sendall().

    Writes at or above *threshold* bytes go out immediately; flush() must be
    called at file boundaries so the peer sees every header in order.
    """

    def __init__(self, sock: socket.socket, threshold: int = SEND_CHUNK_BYTES) -> None:
        self._sock = sock
        self._threshold = threshold
        self._buf = bytearray()

    def write(self, data: bytes, timeout: float | None = IO_TIMEOUT) -> None:
        self._buf.extend(data)
        if len(self._buf) >= self._threshold:
            self.flush(timeout)

    def flush(self, timeout: float | None = IO_TIMEOUT) -> None:
        if not self._buf:
            return
        try:
            self._sock.settimeout(timeout)
            self._sock.sendall(self._buf)
        except TimeoutError as exc:
            raise TransferError(ErrorKind.WRITE_TIMEOUT,
                                "peer stopped reading within the write timeout") from exc
        except OSError as exc:
            raise TransferError(ErrorKind.STREAM_CLOSED_PREMATURELY,
                                f"connection lost: {exc}") from exc
        self._buf.clear()
