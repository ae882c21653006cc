"""
Transfer error kinds.

Every failure inside an engine is raised as a single TransferError carrying
an ErrorKind, so the worker can turn it into one terminal ErrorOccurred event.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTHENTICATION_FAILED     = "AuthenticationFailed"
    CONNECT_FAILED            = "ConnectFailed"
    ACK_TIMEOUT               = "AckTimeout"
    STREAM_CLOSED_PREMATURELY = "StreamClosedPrematurely"
    READ_TIMEOUT              = "ReadTimeout"
    WRITE_TIMEOUT             = "WriteTimeout"
    IO_FAILURE                = "IOFailure"
    INVALID_FRAME             = "InvalidFrame"
    CANCELLED                 = "Cancelled"
    INTERNAL                  = "Internal"


class TransferError(Exception):
    """A session-ending failure of a given kind."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
