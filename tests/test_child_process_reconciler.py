"""Tests for DownloadChildProcess admission and Executor mirroring.

Tests cover:
- Waiting on unusable storage without holding a place in line
- Download Executor manifest
- Phase mirroring and slot release
- Deletion releasing the slot and waking the parent
"""

from __future__ import annotations

import json

import pytest

from conftest import ready_storage
from YtdlOperator.Operator.orchestrator import ObjectKey, ReconcileOutcome
from YtdlOperator.Operator.reconcilers import ChildProcessReconciler
from YtdlOperator.types import FINALIZER, LABEL_PARENT


def _child(name: str = "playlist-a", output=("archive",)) -> dict:
    return {
        "metadata": {"name": name, "labels": {LABEL_PARENT: "playlist"}},
        "spec": {
            "metadata": json.dumps({"id": "a", "ext": "mp4"}),
            "output": list(output),
            "format": "bestvideo",
        },
    }


@pytest.fixture
def reconciler(cluster, config, gate, clock) -> ChildProcessReconciler:
    return ChildProcessReconciler(cluster, config, gate=gate, clock=clock)


def _run(reconciler, name: str = "playlist-a", times: int = 3):
    result = None
    for _ in range(times):
        result = reconciler.reconcile(ObjectKey("DownloadChildProcess", "default", name))
    return result


def test_waits_for_storage_outside_the_line(cluster, reconciler, gate) -> None:
    """Test a child with unready storage waits without queueing at the gate."""
    cluster.put("ContentStorage", {"metadata": {"name": "archive"}, "spec": {}})
    cluster.set_status("ContentStorage", "archive", phase="Verifying")
    cluster.put("DownloadChildProcess", _child())

    result = _run(reconciler)

    status = cluster.status("DownloadChildProcess", "playlist-a")
    assert status["phase"] == "Waiting"
    assert status["message"] == "ContentStorage archive is Verifying"
    assert result.outcome == ReconcileOutcome.WAITING
    assert gate.waiting() == []
    assert FINALIZER in cluster.obj("DownloadChildProcess", "playlist-a")["metadata"]["finalizers"]


def test_admitted_child_creates_download_executor(cluster, reconciler, clock) -> None:
    """Test admission creates an Executor owned by the child."""
    ready_storage(cluster)
    cluster.put("DownloadChildProcess", _child())

    _run(reconciler)

    status = cluster.status("DownloadChildProcess", "playlist-a")
    assert status["phase"] == "Starting"
    assert status["startTime"] == "2024-06-01T12:00:00Z"
    executor = cluster.obj("Executor", "playlist-a")
    assert executor["spec"]["mode"] == "download"
    assert executor["spec"]["output"] == ["archive"]
    assert executor["spec"]["format"] == "bestvideo"
    assert "extra" not in executor["spec"]
    assert executor["metadata"]["labels"]["app"] == "ytdl"
    assert executor["metadata"]["ownerReferences"][0]["kind"] == "DownloadChildProcess"


def test_mirrors_executor_and_wakes_parent(cluster, reconciler, gate) -> None:
    """Test a terminal Executor finishes the child and wakes the parent."""
    ready_storage(cluster)
    cluster.put("DownloadChildProcess", _child())
    _run(reconciler)

    cluster.set_status("Executor", "playlist-a", phase="Running", startTime="2024-06-01T12:01:00Z")
    _run(reconciler, times=1)
    assert cluster.status("DownloadChildProcess", "playlist-a")["phase"] == "Running"

    cluster.set_status("Executor", "playlist-a", phase="Failed", message="exit code 1: boom")
    result = _run(reconciler, times=1)

    status = cluster.status("DownloadChildProcess", "playlist-a")
    assert status["phase"] == "Failed"
    assert status["message"] == "exit code 1: boom"
    assert ObjectKey("Download", "default", "playlist") in result.wake
    assert gate.in_flight() == 0


def test_second_child_waits_for_free_slot(cluster, config, clock) -> None:
    """Test a single slot admits one child and wakes the next on completion."""
    from YtdlOperator.Operator.admission import AdmissionGate

    gate = AdmissionGate(1)
    reconciler = ChildProcessReconciler(cluster, config, gate=gate, clock=clock)
    ready_storage(cluster)
    cluster.put("DownloadChildProcess", _child("playlist-a"))
    cluster.put("DownloadChildProcess", _child("playlist-b"))

    _run(reconciler, "playlist-a")
    _run(reconciler, "playlist-b")
    assert cluster.status("DownloadChildProcess", "playlist-b")["phase"] == "Waiting"
    assert "0 ahead in line" in cluster.status("DownloadChildProcess", "playlist-b")["message"]

    cluster.set_status("Executor", "playlist-a", phase="Succeeded")
    result = _run(reconciler, "playlist-a", times=1)
    assert ObjectKey("DownloadChildProcess", "default", "playlist-b") in result.wake

    _run(reconciler, "playlist-b", times=1)
    assert cluster.status("DownloadChildProcess", "playlist-b")["phase"] == "Starting"


def test_deleting_child_releases_slot(cluster, reconciler, gate) -> None:
    """Test deleting an admitted child deletes its Executor and frees the slot."""
    ready_storage(cluster)
    cluster.put("DownloadChildProcess", _child())
    _run(reconciler)
    assert gate.in_flight() == 1

    cluster.delete("DownloadChildProcess", "default", "playlist-a")
    result = _run(reconciler, times=1)

    assert result.outcome == ReconcileOutcome.DELETED
    assert cluster.names("DownloadChildProcess") == []
    assert cluster.names("Executor") == []
    assert gate.in_flight() == 0
