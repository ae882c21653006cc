"""
Batch building, name checks and chunked streaming reader.

walk_targets(paths) → Iterator[FileEntry]
    Yields a FileEntry for every regular file under *paths*. Directories are
    walked recursively; every file travels under its base name because wire
    names carry no directory part.

build_batch(paths) → list[FileEntry]
    walk_targets() plus the batch rules: non-empty, unique names.

chunk_file(path, size, chunk_size) → Iterator[bytes]
    Memory-efficient generator that yields exactly *size* bytes of *path*.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .errors import ErrorKind, TransferError
from .protocol import MAX_NAME_BYTES, SEND_CHUNK_BYTES

_FORBIDDEN_CHARS = ("/", "\\", "\x00")


@dataclass(frozen=True)
class FileEntry:
    path: Path       # content source on disk
    name: str        # name materialised on the receiver
    size: int        # body length in bytes


def is_safe_name(name: str) -> bool:
    """True if *name* cannot escape the destination directory."""
    if not name or name in (".", ".."):
        return False
    if any(ch in name for ch in _FORBIDDEN_CHARS):
        return False
    return len(name.encode("utf-8")) <= MAX_NAME_BYTES


def destination_path(dest_dir: Path, name: str) -> Path:
    """Resolve *name* inside *dest_dir*, rejecting anything that would leave it."""
    if not is_safe_name(name):
        raise TransferError(ErrorKind.INVALID_FRAME, f"unsafe file name: {name!r}")
    dest = dest_dir / name
    if dest.resolve().parent != dest_dir.resolve():
        raise TransferError(ErrorKind.INVALID_FRAME, f"unsafe file name: {name!r}")
    return dest


def entry_for(path: str | Path, name: str | None = None) -> FileEntry:
    p = Path(path)
    return FileEntry(path=p, name=name or p.name, size=p.stat().st_size)


def walk_targets(paths: Iterable[str | Path]) -> Iterator[FileEntry]:
    for raw in paths:
        p = Path(raw).resolve()
        if p.is_file():
            yield entry_for(p)
        elif p.is_dir():
            for root, dirs, files in os.walk(p):
                dirs.sort()
                for fname in sorted(files):
                    yield entry_for(Path(root) / fname)
        else:
            raise FileNotFoundError(f"Path not found: {p}")


def build_batch(paths: Iterable[str | Path]) -> list[FileEntry]:
    """Collect a sendable batch. Raises ValueError if the batch breaks the rules."""
    entries = list(walk_targets(paths))
    if not entries:
        raise ValueError("No files to send")
    seen: dict[str, Path] = {}
    for entry in entries:
        if not is_safe_name(entry.name):
            raise ValueError(f"Cannot send a file named {entry.name!r}")
        if entry.name in seen:
            raise ValueError(
                f"Two files share the name {entry.name!r}: {seen[entry.name]} and {entry.path}"
            )
        seen[entry.name] = entry.path
    return entries


def chunk_file(
    path: Path | str,
    size: int,
    chunk_size: int = SEND_CHUNK_BYTES,
) -> Iterator[bytes]:
    """
    Yield the first *size* bytes of *path* in chunks of at most *chunk_size*.
    A file that ends before *size* bytes is an IOFailure: the peer has already
    been promised that many.
    """
    remaining = size
    try:
        with open(path, "rb") as fh:
            while remaining > 0:
                block = fh.read(min(chunk_size, remaining))
                if not block:
                    raise TransferError(
                        ErrorKind.IO_FAILURE,
                        f"{path} shrank during transfer ({size - remaining}/{size} bytes read)",
                    )
                remaining -= len(block)
                yield block
    except OSError as exc:
        raise TransferError(ErrorKind.IO_FAILURE, f"cannot read {path}: {exc}") from exc
