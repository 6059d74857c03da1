"""Capture sinks backing one measurement round.

A sink declares statically whether it can be closed: file-backed sinks are
closed when a capture ends or is discarded, in-memory sinks stay readable
after the round so the caller can derive a key from them.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Union


class CaptureSink(Protocol):
    """Byte sink with flush and an optional close capability."""

    closeable: bool

    def write(self, data: bytes) -> None:
        """Append payload bytes."""

    def flush(self) -> None:
        """Push buffered bytes to the backing store."""

    def close(self) -> None:
        """Release the backing store (no-op where ``closeable`` is False)."""


class FileSink:
    """Binary capture file, one per round."""

    closeable = True

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        if self.path.parent != Path(""):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, "wb")

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def write(self, data: bytes) -> None:
        self._handle.write(data)

    def flush(self) -> None:
        if not self._handle.closed:
            self._handle.flush()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class MemorySink:
    """In-memory capture used by single-shot key generation."""

    closeable = False

    def __init__(self) -> None:
        self._buffer = io.BytesIO()

    def write(self, data: bytes) -> None:
        self._buffer.write(data)

    def flush(self) -> None:  # pragma: no cover - trivial
        return

    def close(self) -> None:  # pragma: no cover - trivial
        return

    def getvalue(self) -> bytes:
        return self._buffer.getvalue()


def finalize(sink: CaptureSink) -> None:
    """Flush, then close if the sink supports it."""

    sink.flush()
    if sink.closeable:
        sink.close()


@dataclass
class CaptureSession:
    """One measurement round: its index, sink and payload byte count.

    ``rollover`` opens the sink for a further capture completed in the same
    round, given that capture's index. Without it such a capture is counted
    but its payload is dropped.
    """

    index: int
    sink: CaptureSink
    bytes_written: int = 0
    rollover: Optional[Callable[[int], CaptureSink]] = field(default=None, repr=False)


__all__ = [
    "CaptureSession",
    "CaptureSink",
    "FileSink",
    "MemorySink",
    "finalize",
]
