"""Fakes for the serial link and power line used across the test suite."""

from __future__ import annotations

import collections
import threading
from typing import Iterable, List, Union

from pufreader.config import load_config
from pufreader.markers import Marker, MarkerTable


def _sig(name: str) -> bytes:
    return bytes.fromhex(load_config()["MARKERS"][name])


START = _sig("START")
END = _sig("END")
LOADED = _sig("LOADED")
ASK = _sig("ASK_INPUT")
FINISHED = _sig("FINISHED")
PANIC = _sig("PANIC")


def default_table() -> MarkerTable:
    return MarkerTable.from_config(load_config())


class WaitForWrites:
    """Script item: block the next read until the link has seen ``count`` writes."""

    def __init__(self, count: int) -> None:
        self.count = count


class FakeLink:
    """Scripted serial link; reads return queued chunks, then nothing."""

    def __init__(self, items: Iterable[Union[bytes, WaitForWrites]] = (), *, timeout: float = 5.0) -> None:
        self._items = collections.deque(items)
        self._cond = threading.Condition()
        self.writes: List[bytes] = []
        self.timeout = timeout
        self.closed = False
        self.empty_reads = 0

    @property
    def in_waiting(self) -> int:
        if self._items and isinstance(self._items[0], bytes):
            return len(self._items[0])
        return 0

    def read(self, size: int = 1) -> bytes:
        while self._items:
            item = self._items[0]
            if isinstance(item, WaitForWrites):
                if not self.wait_writes(item.count, self.timeout):
                    raise AssertionError(f"expected {item.count} writes, saw {len(self.writes)}")
                self._items.popleft()
                continue
            self._items.popleft()
            if len(item) > size:
                self._items.appendleft(item[size:])
                item = item[:size]
            return item
        self.empty_reads += 1
        return b""

    def write(self, data: bytes) -> int:
        with self._cond:
            self.writes.append(bytes(data))
            self._cond.notify_all()
        return len(data)

    def flush(self) -> None:
        return

    def close(self) -> None:
        self.closed = True

    def wait_writes(self, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.writes) >= count, timeout=timeout)

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)

    @property
    def unread(self) -> bytes:
        return b"".join(item for item in self._items if isinstance(item, bytes))


class FakePowerLine:
    def __init__(self) -> None:
        self.levels: List[bool] = []
        self.closed = False

    def write(self, level: bool) -> None:
        self.levels.append(level)

    def close(self) -> None:
        self.closed = True


class RecordingSink:
    """Memory sink that also counts flush/close calls."""

    def __init__(self, closeable: bool = True) -> None:
        self.closeable = closeable
        self.data = bytearray()
        self.flushes = 0
        self.closes = 0

    def write(self, data: bytes) -> None:
        if self.closes and self.closeable:
            raise ValueError("write to closed sink")
        self.data.extend(data)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closes += 1


def no_sleep(_seconds: float) -> None:
    return


__all__ = [
    "ASK",
    "END",
    "FINISHED",
    "FakeLink",
    "FakePowerLine",
    "LOADED",
    "Marker",
    "PANIC",
    "RecordingSink",
    "START",
    "WaitForWrites",
    "default_table",
    "no_sleep",
]
