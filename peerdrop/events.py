"""
Immutable event values relayed from a transfer worker to its controller.

A run emits any number of StateChanged / ProgressUpdate events followed by
exactly one terminal event: ErrorOccurred or TransferCompleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .errors import ErrorKind
from .throughput import ProgressEvent


@dataclass(frozen=True)
class FileRecord:
    name: str
    size: int
    digest: str      # BLAKE3 hex digest of the body


@dataclass(frozen=True)
class StateChanged:
    state: str
    detail: str = ""


@dataclass(frozen=True)
class ProgressUpdate:
    progress: ProgressEvent


@dataclass(frozen=True)
class ErrorOccurred:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class TransferCompleted:
    files: tuple[FileRecord, ...]
    total_bytes: int
    elapsed: float


Event = Union[StateChanged, ProgressUpdate, ErrorOccurred, TransferCompleted]
TERMINAL_EVENTS = (ErrorOccurred, TransferCompleted)


def is_terminal(event: Event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
