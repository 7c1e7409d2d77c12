from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from peerrelay.config import TRANSFER_BUFFER_SIZE


class TransferBuffer:
    """One preallocated buffer shared by every relay step on the loop thread.

    Its contents are only meaningful inside a single ``acquire()`` block: one
    read from a socket followed by the flush of those bytes to the peer.
    """

    def __init__(self, size: int = TRANSFER_BUFFER_SIZE) -> None:
        if size <= 0:
            raise ValueError("buffer size must be positive")
        self._data = bytearray(size)
        self._view = memoryview(self._data)
        self._held = False

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def in_use(self) -> bool:
        return self._held

    @contextmanager
    def acquire(self) -> Iterator[memoryview]:
        if self._held:
            raise RuntimeError("transfer buffer is already in use")
        self._held = True
        try:
            yield self._view
        finally:
            self._held = False
