"""In-memory reconcile work queue with per-object sequencing.

The cluster is the source of truth, so the queue holds only keys and can be
rebuilt from a relist at any time. It provides the guarantees the worker pool
relies on:

- **Dedupe**: a key waiting in the queue is held once, however many events
  arrive for it.
- **Sequencing**: a key handed to a worker is not handed to a second worker
  until ``done`` is called; events arriving meanwhile mark it dirty and it is
  re-queued on ``done``.
- **Delays**: ``add_after`` parks a key until its deadline, keeping the
  earliest deadline when a key is parked twice.

**Usage:**

    queue = WorkQueue()
    queue.add(key)
    key = queue.get(timeout=1.0)
    try:
        reconcile(key)
    finally:
        queue.done(key)
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .models import ObjectKey

__all__ = ["WorkQueue"]

logger = logging.getLogger(__name__)


class WorkQueue:
    """Thread-safe dedupe/delay queue of ``ObjectKey`` items."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._delayed: List[Tuple[float, int, ObjectKey]] = []
        self._deadlines: Dict[ObjectKey, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def add(self, key: ObjectKey) -> None:
        """Enqueue ``key`` for immediate processing."""
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: ObjectKey) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._ready.append(key)
            self._cond.notify()

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Enqueue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            deadline = self._clock() + delay
            current = self._deadlines.get(key)
            if current is not None and current <= deadline:
                return
            self._deadlines[key] = deadline
            heapq.heappush(self._delayed, (deadline, next(self._seq), key))
            self._cond.notify()

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys to the ready queue; return seconds to the next deadline."""
        now = self._clock()
        while self._delayed:
            deadline, _, key = self._delayed[0]
            if self._deadlines.get(key) != deadline:
                heapq.heappop(self._delayed)
                continue
            if deadline > now:
                return deadline - now
            heapq.heappop(self._delayed)
            del self._deadlines[key]
            self._add_locked(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[ObjectKey]:
        """Return the next ready key, or ``None`` on timeout or shutdown."""
        end = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._ready:
                    key = self._ready.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                wait_for = next_due
                if end is not None:
                    remaining = end - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: ObjectKey) -> None:
        """Mark ``key`` as finished; re-queue it if events arrived meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._ready.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def stats(self) -> Dict[str, int]:
        """Return queue depth counters for the periodic debug log."""
        with self._cond:
            return {
                "ready": len(self._ready),
                "processing": len(self._processing),
                "delayed": len(self._deadlines),
            }

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._deadlines)
