"""
Integrity helpers — BLAKE3 hashing.

FileDigest accumulates a digest while a body streams past, so neither side
has to re-read a file after the transfer to report it.
"""

from __future__ import annotations

import blake3 as _b3


class FileDigest:
    """Incremental BLAKE3 over one file body."""

    def __init__(self) -> None:
        self._hasher = _b3.blake3()

    def update(self, data: bytes) -> None:
        self._hasher.update(data)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()
