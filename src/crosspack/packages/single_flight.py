"""Per-key single-flight execution.

Concurrent target pipelines share the archive cache, the staging cache and
the toolchain cache. For one key at most one worker computes the value;
other callers asking for the same key block on the per-key lock and then
observe the finished result instead of repeating the fetch or build.
"""

import logging
import threading
from typing import Callable, Dict, Generic, Hashable, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Deduplicates concurrent computations for the same key.

    Successful results are memoized for the lifetime of the instance.
    Failures are not memoized: every waiter that was blocked on a failed
    computation gets to try again (fail-fast, no retry loop here).

    Example:
        flights: SingleFlight[Path] = SingleFlight("archives")
        path = flights.do(sha256, lambda: download(url, sha256))
    """

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._locks_lock = threading.Lock()  # guards the two dicts below
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._results: Dict[Hashable, T] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._locks_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        """Return the memoized value for key, computing it at most once at a time.

        Args:
            key: Cache key
            fn: Zero-argument callable producing the value

        Returns:
            The value produced by fn (possibly by another thread)
        """
        with self._locks_lock:
            if key in self._results:
                return self._results[key]

        lock = self._lock_for(key)
        with lock:
            with self._locks_lock:
                if key in self._results:
                    logging.debug(f"[{self.name}] joined finished flight for {key}")
                    return self._results[key]

            value = fn()

            with self._locks_lock:
                self._results[key] = value
            return value

    def forget(self, key: Hashable) -> None:
        """Drop a memoized result so the next call recomputes it."""
        with self._locks_lock:
            self._results.pop(key, None)

    def clear(self) -> None:
        with self._locks_lock:
            self._results.clear()
            self._key_locks.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._locks_lock:
            return key in self._results
