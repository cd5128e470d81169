"""Thread-safe in-memory cache with a per-entry TTL.

Readers share a reader-writer lock, so concurrent lookups never block each
other; a `set` takes the lock exclusively and swaps in a fresh immutable
entry. Expired entries are not purged: `get` treats them as absent and the
next `set` for that key overwrites them. There is no capacity bound.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Tuple

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache")


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with the clock reading at which it stops being valid."""
    value: Any
    expires_at: float


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def reading(self) -> "_Guard":
        return _Guard(self.acquire_read, self.release_read)

    def writing(self) -> "_Guard":
        return _Guard(self.acquire_write, self.release_write)


class _Guard:
    def __init__(self, acquire: Callable[[], None], release: Callable[[], None]) -> None:
        self._acquire = acquire
        self._release = release

    def __enter__(self) -> None:
        self._acquire()

    def __exit__(self, *exc_info) -> None:
        self._release()


class TTLCache:
    """Expiring key -> value store shared by every request in the process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Create an empty cache; `clock` returns seconds and is overridable for tests."""
        logger.debug("Initializing TTLCache")
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = ReadWriteLock()
        self._clock = clock

    def get(self, key: Hashable) -> Tuple[Any, bool]:
        """Return (value, True) for a live entry, (None, False) if absent or expired."""
        with self._lock.reading():
            entry = self._entries.get(key)
        if entry is None:
            return None, False
        if entry.expires_at <= self._clock():
            return None, False
        return entry.value, True

    def set(self, key: Hashable, value: Any, ttl_seconds: float) -> None:
        """Store `value` under `key`, replacing any previous entry."""
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
        with self._lock.writing():
            self._entries[key] = entry

    def clear(self) -> None:
        """Drop every entry (tests only; the service never resets its cache)."""
        with self._lock.writing():
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock.reading():
            return len(self._entries)
