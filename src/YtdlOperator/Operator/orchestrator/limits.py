"""Keyed concurrency limits for per-configuration single-flight.

This module provides thread-safe semaphores keyed by an arbitrary hashable
value. The credential verification cache uses it with ``default_limit=1`` so
that at most one handshake per backend configuration is in flight, while
handshakes for different configurations proceed in parallel.

**Design:**

    limiter = KeyedLimiter(default_limit=1)

    if limiter.try_acquire(config_key):
        try:
            ...  # perform the handshake
        finally:
            limiter.release(config_key)
    else:
        ...  # someone else is verifying this configuration

**Memory Management:**

Entries are created on first use and dropped as soon as the last holder
releases them, so dynamic keys (secret names, buckets) never accumulate.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Hashable, Optional

__all__ = ["KeyedLimiter"]

logger = logging.getLogger(__name__)


class _SemaphoreEntry:
    """Semaphore plus the number of threads holding or waiting on it."""

    def __init__(self, capacity: int) -> None:
        self.semaphore = threading.Semaphore(capacity)
        self.capacity = capacity
        self.users = 0


class KeyedLimiter:
    """Thread-safe keyed semaphore.

    Example:
        >>> limiter = KeyedLimiter(default_limit=1)
        >>> limiter.try_acquire(("s3", "creds", "bucket"))
        True
        >>> limiter.try_acquire(("s3", "creds", "bucket"))
        False
        >>> limiter.release(("s3", "creds", "bucket"))
    """

    def __init__(self, default_limit: int, per_key: Optional[Dict[Hashable, int]] = None) -> None:
        """Initialize keyed limiter.

        Args:
            default_limit: Concurrency limit for keys without an override
            per_key: Optional per-key overrides
        """
        self.default_limit = max(1, default_limit)
        self.per_key = dict(per_key or {})
        self._entries: Dict[Hashable, _SemaphoreEntry] = {}
        self._mutex = threading.Lock()

    def _checkout(self, key: Hashable) -> _SemaphoreEntry:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                entry = _SemaphoreEntry(self.per_key.get(key, self.default_limit))
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _SemaphoreEntry) -> None:
        with self._mutex:
            entry.users -= 1
            if entry.users <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def acquire(self, key: Hashable, timeout: Optional[float] = None) -> bool:
        """Acquire a slot for ``key``, blocking up to ``timeout`` seconds.

        Returns:
            True if the slot was acquired.
        """
        entry = self._checkout(key)
        acquired = entry.semaphore.acquire(timeout=timeout)
        if not acquired:
            self._checkin(key, entry)
        return acquired

    def try_acquire(self, key: Hashable) -> bool:
        """Acquire a slot for ``key`` without blocking."""
        entry = self._checkout(key)
        if entry.semaphore.acquire(blocking=False):
            return True
        self._checkin(key, entry)
        return False

    def release(self, key: Hashable) -> None:
        """Release a slot previously acquired for ``key``.

        Raises:
            KeyError: If ``key`` has no outstanding acquisition.
        """
        with self._mutex:
            entry = self._entries.get(key)
        if entry is None:
            raise KeyError(f"release of unheld key {key!r}")
        entry.semaphore.release()
        self._checkin(key, entry)

    def in_flight(self, key: Hashable) -> bool:
        """Return True when some thread currently holds ``key``."""
        with self._mutex:
            return key in self._entries
