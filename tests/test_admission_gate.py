"""Tests for the FIFO admission gate.

Tests cover:
- Limit enforcement and idempotent admission
- Creation-time ordering of the waiting line
- Release returning waiting keys, and withdrawal from the line
- Restore after a controller restart
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from YtdlOperator.Operator.admission import AdmissionGate
from YtdlOperator.Operator.orchestrator import ObjectKey

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def key(name: str) -> ObjectKey:
    return ObjectKey("DownloadChildProcess", "default", name)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def test_limit_is_enforced() -> None:
    """Test no more than ``limit`` keys are admitted."""
    gate = AdmissionGate(limit=2)
    assert gate.try_admit(key("a"), at(1)).admitted
    assert gate.try_admit(key("b"), at(2)).admitted
    decision = gate.try_admit(key("c"), at(3))

    assert not decision.admitted
    assert decision.position == 0
    assert decision.describe() == (
        "waiting for a concurrency slot (2/2 in use, 0 ahead in line)"
    )
    assert gate.in_flight() == 2


def test_admission_is_idempotent() -> None:
    """Test re-admitting an admitted key does not take a second slot."""
    gate = AdmissionGate(limit=1)
    assert gate.try_admit(key("a")).admitted
    assert gate.try_admit(key("a")).admitted
    assert gate.in_flight() == 1


def test_older_jobs_are_admitted_first() -> None:
    """Test the line is ordered by creation time, not by arrival."""
    gate = AdmissionGate(limit=1)
    assert gate.try_admit(key("running"), at(0)).admitted
    assert not gate.try_admit(key("young"), at(20)).admitted
    old = gate.try_admit(key("old"), at(10))
    assert not old.admitted
    assert old.position == 0
    assert gate.waiting() == [key("old"), key("young")]

    assert gate.release(key("running")) == [key("old"), key("young")]
    # The younger job may not jump the line.
    assert not gate.try_admit(key("young"), at(20)).admitted
    assert gate.try_admit(key("old"), at(10)).admitted


def test_withdrawing_a_waiter_unblocks_the_line() -> None:
    """Test releasing a waiting key removes it from the line."""
    gate = AdmissionGate(limit=1)
    gate.try_admit(key("a"), at(0))
    gate.try_admit(key("b"), at(1))
    gate.try_admit(key("c"), at(2))

    assert gate.release(key("b")) == []
    assert gate.waiting() == [key("c")]
    assert gate.release(key("unknown")) == []


def test_restore_counts_against_limit() -> None:
    """Test restored jobs occupy slots even beyond the limit."""
    gate = AdmissionGate(limit=1)
    gate.restore([(key("a"), at(0)), (key("b"), at(1))])
    assert gate.in_flight() == 2
    assert gate.is_admitted(key("b"))

    assert not gate.try_admit(key("c"), at(2)).admitted
    gate.release(key("a"))
    assert not gate.try_admit(key("c"), at(2)).admitted
    gate.release(key("b"))
    assert gate.try_admit(key("c"), at(2)).admitted


def test_invalid_limit() -> None:
    """Test a limit below one is rejected."""
    with pytest.raises(ValueError):
        AdmissionGate(limit=0)
