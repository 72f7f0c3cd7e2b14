"""Per-key mutual exclusion for read-decide-write sequences."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator


@dataclass(slots=True)
class _Entry:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class KeyedLocks:
    """Thread-safe registry handing out one lock per key.

    Entries are dropped once nobody holds or waits on them, so the registry only grows
    with the number of keys under contention at the same time.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
