"""Tests for the Download lifecycle driven by the Download and child reconcilers.

Tests cover:
- Query admission and the query Executor manifest
- Expansion of query records into children
- Concurrency limit across children
- ignoreErrors handling and final counters
- Re-query after queryInterval without duplicate children
- Generation reset and deletion
"""

from __future__ import annotations

import json
from typing import Dict, List

import pytest

from conftest import download_body, ready_storage, settle
from YtdlOperator.Operator.orchestrator import ObjectKey, ReconcileOutcome
from YtdlOperator.Operator.reconcilers import ChildProcessReconciler, DownloadReconciler
from YtdlOperator.Operator.reconcilers.download import parse_info
from YtdlOperator.types import LABEL_PARENT_UID, child_name


def _records(*ids: str) -> str:
    return "\n".join(json.dumps({"id": item, "title": item.upper(), "ext": "mp4"}) for item in ids)


@pytest.fixture
def reconcilers(cluster, config, gate, clock) -> Dict[str, object]:
    return {
        "Download": DownloadReconciler(cluster, config, gate=gate, clock=clock),
        "DownloadChildProcess": ChildProcessReconciler(cluster, config, gate=gate, clock=clock),
    }


def _finish_query(cluster, name: str, records: str) -> None:
    cluster.put(
        "ConfigMap",
        {"metadata": {"name": f"{name}-info"}, "data": {"info.jsonl": records}},
    )
    cluster.set_status("Executor", f"{name}-query", phase="Succeeded")


def _download_executors(cluster) -> List[str]:
    return [
        obj["metadata"]["name"]
        for obj in cluster.list("Executor")
        if obj["spec"]["mode"] == "download"
    ]


def _finish_children(cluster, reconcilers, outcomes: Dict[str, str]) -> None:
    """Complete download executors as they get admitted until none are left running."""
    for _ in range(len(outcomes) + 1):
        for name in _download_executors(cluster):
            if not cluster.status("Executor", name).get("phase"):
                cluster.set_status("Executor", name, phase=outcomes[name], message="done")
        settle(cluster, reconcilers)


def test_query_executor_created_once_storage_ready(cluster, reconcilers) -> None:
    """Test the query Executor waits for storage, then carries the Download's query."""
    cluster.put("Download", download_body(extra="--playlist-end 3", ignoreErrors=True))
    settle(cluster, reconcilers)

    status = cluster.status("Download", "playlist")
    assert status["phase"] == "Waiting"
    assert "ContentStorage archive not found" in status["message"]
    assert cluster.names("Executor") == []

    ready_storage(cluster)
    settle(cluster, reconcilers)

    assert cluster.status("Download", "playlist")["phase"] == "Querying"
    query = cluster.obj("Executor", "playlist-query")
    assert query["spec"] == {
        "mode": "query",
        "metadata": "https://example.com/playlist",
        "output": ["playlist-info"],
        "ignoreErrors": True,
        "extra": "--playlist-end 3",
    }
    uid = cluster.obj("Download", "playlist")["metadata"]["uid"]
    assert query["metadata"]["labels"][LABEL_PARENT_UID] == uid
    assert query["metadata"]["ownerReferences"][0]["kind"] == "Download"


def test_children_never_exceed_concurrency(cluster, reconcilers, config) -> None:
    """Test at most ``concurrency`` download Executors exist at any time."""
    ready_storage(cluster)
    cluster.put("Download", download_body())
    settle(cluster, reconcilers)
    _finish_query(cluster, "playlist", _records("a", "b", "c", "d", "e"))
    settle(cluster, reconcilers)

    assert cluster.names("DownloadChildProcess") == sorted(
        child_name("playlist", item) for item in "abcde"
    )
    assert cluster.names("Executor") == sorted(_download_executors(cluster))
    assert len(_download_executors(cluster)) == config.concurrency
    phases = [c["status"]["phase"] for c in cluster.list("DownloadChildProcess")]
    assert phases.count("Waiting") == 5 - config.concurrency
    assert cluster.names("ConfigMap") == []

    running = _download_executors(cluster)
    cluster.set_status("Executor", running[0], phase="Succeeded")
    settle(cluster, reconcilers)

    active = [
        name
        for name in _download_executors(cluster)
        if cluster.status("Executor", name).get("phase") != "Succeeded"
    ]
    assert len(active) == config.concurrency


def test_ignore_errors_succeeds_with_partial_failures(cluster, reconcilers) -> None:
    """Test ignoreErrors lets the Download succeed with one failed item."""
    ready_storage(cluster)
    cluster.put("Download", download_body(ignoreErrors=True))
    settle(cluster, reconcilers)
    _finish_query(cluster, "playlist", _records("a", "b", "c"))
    settle(cluster, reconcilers)

    outcomes = {
        child_name("playlist", "a"): "Succeeded",
        child_name("playlist", "b"): "Failed",
        child_name("playlist", "c"): "Succeeded",
    }
    _finish_children(cluster, reconcilers, outcomes)

    status = cluster.status("Download", "playlist")
    assert status["phase"] == "Succeeded"
    assert status["totalVideos"] == 3
    assert status["downloadedVideos"] == 2
    assert status["failedVideos"] == 1
    assert status["message"] == "1 of 3 items failed"


def test_failed_child_fails_download_without_ignore_errors(cluster, reconcilers) -> None:
    """Test a failed item ends the Download in ErrDownloadFailed."""
    ready_storage(cluster)
    cluster.put("Download", download_body())
    settle(cluster, reconcilers)
    _finish_query(cluster, "playlist", _records("a", "b", "c"))
    settle(cluster, reconcilers)

    outcomes = {child_name("playlist", item): "Succeeded" for item in "abc"}
    outcomes[child_name("playlist", "b")] = "Failed"
    _finish_children(cluster, reconcilers, outcomes)

    status = cluster.status("Download", "playlist")
    assert status["phase"] == "ErrDownloadFailed"
    assert status["failedVideos"] == 1
    assert child_name("playlist", "b") in status["message"]


def test_query_failure_is_absorbing(cluster, reconcilers, gate) -> None:
    """Test a failed query sets ErrQueryFailed and frees the slot."""
    ready_storage(cluster)
    cluster.put("Download", download_body())
    settle(cluster, reconcilers)
    cluster.set_status("Executor", "playlist-query", phase="Failed", message="exit code 1: 404")
    settle(cluster, reconcilers)

    status = cluster.status("Download", "playlist")
    assert status["phase"] == "ErrQueryFailed"
    assert "exit code 1: 404" in status["message"]
    assert gate.in_flight() == 0
    assert cluster.names("Executor") == []

    result = reconcilers["Download"].reconcile(ObjectKey("Download", "default", "playlist"))
    assert result.outcome == ReconcileOutcome.NOOP


def test_requery_adds_only_new_items(cluster, reconcilers, clock) -> None:
    """Test a periodic re-query creates children for new items only."""
    ready_storage(cluster)
    cluster.put("Download", download_body(queryInterval="1h", ignoreErrors=True))
    settle(cluster, reconcilers)
    _finish_query(cluster, "playlist", _records("a", "b"))
    settle(cluster, reconcilers)
    _finish_children(
        cluster, reconcilers, {child_name("playlist", item): "Succeeded" for item in "ab"}
    )
    assert cluster.status("Download", "playlist")["phase"] == "Succeeded"

    clock.advance(minutes=30)
    settle(cluster, reconcilers)
    assert cluster.status("Download", "playlist")["phase"] == "Succeeded"

    clock.advance(minutes=31)
    settle(cluster, reconcilers)
    assert cluster.status("Download", "playlist")["phase"] == "Querying"

    _finish_query(cluster, "playlist", _records("a", "b", "new"))
    settle(cluster, reconcilers)
    assert len(cluster.names("DownloadChildProcess")) == 3
    _finish_children(
        cluster, reconcilers, {child_name("playlist", item): "Succeeded" for item in ("a", "b", "new")}
    )

    status = cluster.status("Download", "playlist")
    assert status["phase"] == "Succeeded"
    assert status["totalVideos"] == 3
    assert status["downloadedVideos"] == 3
    assert status["downloadedVideos"] <= status["totalVideos"]


def test_spec_change_resets_to_pending(cluster, reconcilers) -> None:
    """Test editing a failed Download restarts it from Pending."""
    ready_storage(cluster)
    cluster.put("Download", download_body())
    settle(cluster, reconcilers)
    cluster.set_status("Executor", "playlist-query", phase="Failed")
    settle(cluster, reconcilers)
    assert cluster.status("Download", "playlist")["phase"] == "ErrQueryFailed"

    cluster.update_spec("Download", "playlist", input="https://example.com/other")
    reconcilers["Download"].reconcile(ObjectKey("Download", "default", "playlist"))
    status = cluster.status("Download", "playlist")
    assert status["phase"] == "Pending"
    assert status["observedGeneration"] == 2

    settle(cluster, reconcilers)
    assert cluster.status("Download", "playlist")["phase"] == "Querying"
    assert cluster.obj("Executor", "playlist-query")["spec"]["metadata"] == "https://example.com/other"


def test_deletion_collects_children_before_finalizer(cluster, reconcilers, gate) -> None:
    """Test deleting a Download removes children and executors, then the Download."""
    ready_storage(cluster)
    cluster.put("Download", download_body())
    settle(cluster, reconcilers)
    _finish_query(cluster, "playlist", _records("a", "b", "c"))
    settle(cluster, reconcilers)
    assert gate.in_flight() == 2

    cluster.delete("Download", "default", "playlist")
    settle(cluster, reconcilers)

    assert cluster.names("Download") == []
    assert cluster.names("DownloadChildProcess") == []
    assert cluster.names("Executor") == []
    assert gate.in_flight() == 0


def test_parse_info_skips_bad_lines_and_duplicates() -> None:
    """Test info parsing keeps the first record per id."""
    text = "\n".join(
        [
            json.dumps({"id": "a", "n": 1}),
            "not json",
            json.dumps({"title": "no id"}),
            json.dumps({"id": "a", "n": 2}),
            "",
            json.dumps({"id": "b"}),
        ]
    )
    items = parse_info(text)
    assert [item for item, _ in items] == ["a", "b"]
    assert json.loads(items[0][1])["n"] == 1
