"""
In-process locks keyed by entity id.

Serializes mutations of one workflow request or one card within a
process.  Cross-process safety comes from row locks (FOR UPDATE) and the
card version column; these locks only stop two threads of the same
process from racing before the database sees either of them.

An entry lives only while some thread holds or waits for its key, so the
map stays bounded by the number of in-flight operations.
"""

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLocks:
    """Map of key -> lock, reference counted by holders and waiters."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float = -1) -> Iterator[None]:
        """Hold the lock for ``key``.

        Raises:
            TimeoutError: Not acquired within ``timeout`` seconds.
        """
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1
        try:
            if not entry.lock.acquire(timeout=timeout):
                raise TimeoutError(f"Timed out waiting for lock on {key!r}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
