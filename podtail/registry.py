"""TailRegistry: the single shared map from target identity to its Tail.

One registry is created per run and handed to the Orchestrator, so several
runs can coexist in one process. Readers share access; writers are exclusive.
All operations are pure in-memory map operations and never block on I/O.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from podtail.tail import Tail


class _ReadWriteLock:
    """Many concurrent readers or one writer; writers are not starved."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TailRegistry:
    """Concurrency-safe ``target id -> Tail`` map.

    Holds at most one entry per identity. Callers never touch the map
    directly; everything goes through get/set/clear.
    """

    def __init__(self) -> None:
        self._tails: dict[str, Tail] = {}
        self._lock = _ReadWriteLock()

    def get(self, target_id: str) -> Tail | None:
        with self._lock.read():
            return self._tails.get(target_id)

    def set(self, target_id: str, tail: Tail) -> None:
        with self._lock.write():
            self._tails[target_id] = tail

    def clear(self, target_id: str) -> None:
        """Remove the entry for *target_id*; absent ids are ignored."""
        with self._lock.write():
            self._tails.pop(target_id, None)

    def snapshot(self) -> list[Tail]:
        """Return the registered tails at this instant (used for shutdown)."""
        with self._lock.read():
            return list(self._tails.values())

    def __contains__(self, target_id: object) -> bool:
        with self._lock.read():
            return target_id in self._tails

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tails)
