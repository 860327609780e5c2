"""Per-key mutual exclusion for the Runner.

Two registries are used: one keyed by subject (serialises "is there already
an execution for this contact?" checks against starts and inbound messages)
and one keyed by execution id (serialises every mutation of one execution).
When both are needed the subject lock is taken first.

A key's lock lives only while some thread holds it or waits for it, so the
registries stay as small as the number of in-flight calls.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """Re-entrant lock per key, reference-counted by its holders and waiters."""

    def __init__(self, name: str = "locks"):
        self.name = name
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    def __repr__(self) -> str:
        return f"KeyedLocks({self.name!r}, keys={len(self)})"
