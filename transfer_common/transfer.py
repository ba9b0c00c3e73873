# transfer_common/transfer.py
from __future__ import annotations

import enum
import threading
import time


class Direction(enum.Enum):
    IDLE = "IDLE"
    DOWNLOADING = "DOWNLOADING"
    UPLOADING = "UPLOADING"


class TransferState:
    """
    Bookkeeping for the one transfer a session may run at a time.

    Both peers keep one: the sending side advances ``transferred`` as chunks
    are queued, the receiving side appends decoded chunks to the accumulation
    buffer. Starting a transfer resets everything from the previous one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.filename = ""
        self.total_size = 0
        self.transferred = 0
        self.direction = Direction.IDLE
        self.finished = False
        self.source_path: str | None = None
        self.started_at = 0.0
        self._sequence = 0
        self._buffer = bytearray()
        self._sent_at: dict[int, float] = {}

    def _reset(self, direction: Direction, filename: str, size: int, source_path: str | None) -> None:
        self.direction = direction
        self.filename = filename
        self.total_size = size
        self.transferred = 0
        self.finished = False
        self.source_path = source_path
        self.started_at = time.monotonic()
        self._sequence = 0
        self._buffer = bytearray()
        self._sent_at.clear()

    def start_download(self, filename: str, size: int, source_path: str | None = None) -> None:
        with self._lock:
            self._reset(Direction.DOWNLOADING, filename, size, source_path)

    def start_upload(self, filename: str, size: int, source_path: str | None = None) -> None:
        with self._lock:
            self._reset(Direction.UPLOADING, filename, size, source_path)

    def add_data(self, data: bytes) -> int:
        """Append a received chunk; returns the new transferred count."""
        with self._lock:
            self._buffer += data
            self.transferred += len(data)
            return self.transferred

    def advance(self, nbytes: int) -> int:
        """Count bytes handed to the connection by the sending side."""
        with self._lock:
            self.transferred += nbytes
            return self.transferred

    def next_sequence(self) -> int:
        with self._lock:
            seq = self._sequence
            self._sequence += 1
            return seq

    def mark_sent(self, seq: int, when: float) -> None:
        with self._lock:
            self._sent_at[seq] = when

    def pop_sent(self, seq: int) -> float | None:
        with self._lock:
            return self._sent_at.pop(seq, None)

    def finish(self) -> None:
        with self._lock:
            self.finished = True

    def data(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    @property
    def busy(self) -> bool:
        return self.direction is not Direction.IDLE and not self.finished

    @property
    def progress(self) -> float:
        if self.direction is Direction.IDLE:
            return 0.0
        if self.total_size <= 0:
            return 1.0 if self.finished else 0.0
        return min(self.transferred / self.total_size, 1.0)

    def is_upload_complete(self) -> bool:
        return self.direction is Direction.UPLOADING and self.transferred >= self.total_size

    def is_download_complete(self) -> bool:
        return self.direction is Direction.DOWNLOADING and self.transferred >= self.total_size

    def average_speed(self, now: float | None = None) -> float:
        """Bytes per second since the transfer started."""
        elapsed = (now if now is not None else time.monotonic()) - self.started_at
        return self.transferred / elapsed if elapsed > 0 else 0.0
