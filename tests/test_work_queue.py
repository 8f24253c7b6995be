"""Tests for the reconcile work queue.

Tests cover:
- Dedupe of queued keys
- Per-key sequencing while processing
- Delayed re-adds keeping the earliest deadline
- Shutdown
"""

from __future__ import annotations

import threading

from YtdlOperator.Operator.orchestrator import ObjectKey, WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


A = ObjectKey("Download", "default", "a")
B = ObjectKey("Download", "default", "b")


def test_dedupes_queued_keys() -> None:
    """Test a key added twice is handed out once."""
    queue = WorkQueue()
    queue.add(A)
    queue.add(A)
    queue.add(B)

    assert len(queue) == 2
    assert queue.get(timeout=0) == A
    assert queue.get(timeout=0) == B
    assert queue.get(timeout=0) is None


def test_key_is_not_processed_twice_at_once() -> None:
    """Test events during processing re-queue the key only after done."""
    queue = WorkQueue()
    queue.add(A)
    assert queue.get(timeout=0) == A

    queue.add(A)
    assert queue.get(timeout=0) is None

    queue.done(A)
    assert queue.get(timeout=0) == A
    queue.done(A)
    assert queue.get(timeout=0) is None


def test_add_after_keeps_earliest_deadline() -> None:
    """Test delayed keys become ready at their earliest deadline."""
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add_after(A, 10)
    queue.add_after(A, 5)
    queue.add_after(A, 30)

    assert queue.get(timeout=0) is None
    clock.now += 5
    assert queue.get(timeout=0) == A
    queue.done(A)
    clock.now += 100
    assert queue.get(timeout=0) is None


def test_non_positive_delay_is_immediate() -> None:
    """Test add_after with zero delay behaves like add."""
    queue = WorkQueue()
    queue.add_after(A, 0)
    assert queue.stats() == {"ready": 1, "processing": 0, "delayed": 0}


def test_shutdown_unblocks_getters() -> None:
    """Test shutdown wakes a blocked get."""
    queue = WorkQueue()
    results = []
    t = threading.Thread(target=lambda: results.append(queue.get()))
    t.start()
    queue.shutdown()
    t.join(timeout=5)
    assert results == [None]
    queue.add(A)
    assert len(queue) == 0
