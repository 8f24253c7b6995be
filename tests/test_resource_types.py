"""Tests for resource parsing, validation and naming rules.

Tests cover:
- Duration parsing
- Storage references and the exactly-one-backend rule
- Download and child spec validation
- Deterministic child names and item labels
- Phase transition tables
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from YtdlOperator.errors import PhaseTransitionError
from YtdlOperator.types import (
    ContentStorage,
    Download,
    DownloadChildProcess,
    DownloadPhase,
    ExecutorPhase,
    MetadataTarget,
    StoragePhase,
    StorageRef,
    child_name,
    format_timestamp,
    item_label,
    parse_duration,
)
from YtdlOperator.types.phases import (
    DOWNLOAD_TRANSITIONS,
    EXECUTOR_TRANSITIONS,
    STORAGE_TRANSITIONS,
    advance_phase,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("10s", timedelta(seconds=10)),
        ("48h", timedelta(hours=48)),
        ("1h30m", timedelta(minutes=90)),
        ("250ms", timedelta(milliseconds=250)),
        (" 2D ", timedelta(days=2)),
    ],
)
def test_parse_duration(text: str, expected: timedelta) -> None:
    """Test compact duration strings."""
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "10", "ten seconds", "5x", "1h-5m"])
def test_parse_duration_rejects(text: str) -> None:
    """Test malformed durations raise ValueError."""
    with pytest.raises(ValueError):
        parse_duration(text)


def test_storage_refs() -> None:
    """Test bare names refer to ContentStorage and prefixed names to MetadataTarget."""
    assert StorageRef.parse("archive") == StorageRef(kind="ContentStorage", name="archive")
    assert StorageRef.parse("MetadataTarget/index") == StorageRef(kind="MetadataTarget", name="index")
    with pytest.raises(ValueError):
        StorageRef.parse("Secret/nope")


def test_download_spec_validation() -> None:
    """Test bad intervals and storage references are rejected at parse time."""
    good = Download.from_object(
        {
            "metadata": {"name": "p", "generation": 3},
            "spec": {
                "input": "https://example.com/p",
                "queryInterval": "1h",
                "storage": ["archive", "MetadataTarget/index"],
                "ignoreErrors": True,
            },
            "status": {"phase": "Downloading", "totalVideos": 4, "lastQueried": "2024-01-01T00:00:00Z"},
        }
    )
    assert good.spec.ignore_errors is True
    assert [ref.kind for ref in good.spec.storage_refs()] == ["ContentStorage", "MetadataTarget"]
    assert good.status.phase == DownloadPhase.DOWNLOADING
    assert format_timestamp(good.status.last_queried) == "2024-01-01T00:00:00Z"

    with pytest.raises(ValidationError):
        Download.from_object({"metadata": {"name": "p"}, "spec": {"input": "x", "queryInterval": "0s"}})
    with pytest.raises(ValidationError):
        Download.from_object({"metadata": {"name": "p"}, "spec": {"input": "x", "storage": ["a/b/c"]}})


def test_child_output_accepts_single_string() -> None:
    """Test a single storage reference string is treated as a one-element list."""
    child = DownloadChildProcess.from_object(
        {"metadata": {"name": "c"}, "spec": {"metadata": json.dumps({"id": "a"}), "output": "archive"}}
    )
    assert child.spec.output == ["archive"]
    assert child.record() == {"id": "a"}


def test_exactly_one_backend() -> None:
    """Test sinks must name exactly one backend."""
    with pytest.raises(ValidationError):
        ContentStorage.from_object(
            {
                "metadata": {"name": "s"},
                "spec": {"video": [{"s3": {"bucket": "b"}, "redis": {"secret": "r"}}]},
            }
        )
    with pytest.raises(ValidationError):
        MetadataTarget.from_object({"metadata": {"name": "m"}, "spec": {}})

    target = MetadataTarget.from_object(
        {"metadata": {"name": "m"}, "spec": {"mongodb": {"secret": "mongo"}, "webhook": [{"url": "https://hook"}]}}
    )
    assert [b.backend for b in target.backends()] == ["mongodb"]
    assert target.webhooks()[0].timeout_seconds() == 10


def test_thumbnail_dimensions_must_be_positive() -> None:
    """Test non-positive thumbnail sizes are rejected."""
    with pytest.raises(ValidationError):
        ContentStorage.from_object(
            {"metadata": {"name": "s"}, "spec": {"thumbnail": [{"s3": {"bucket": "b"}, "width": 0}]}}
        )


def test_child_names_are_deterministic_and_distinct() -> None:
    """Test names are stable, valid and distinct for IDs differing only in case."""
    assert child_name("playlist", "abc-123") == "playlist-abc-123"
    upper = child_name("playlist", "AbC")
    lower = child_name("playlist", "abc")
    assert upper != lower
    assert upper == child_name("playlist", "AbC")
    assert upper.startswith("playlist-abc-")
    odd = child_name("playlist", "___")
    assert odd.startswith("playlist-") and len(odd) == len("playlist-") + 12
    long_name = child_name("p", "x" * 400)
    assert len(long_name) <= 253


def test_item_labels() -> None:
    """Test valid IDs are used verbatim and others are digested."""
    assert item_label("dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    digested = item_label("has spaces")
    assert digested != "has spaces" and len(digested) <= 63
    assert len(item_label("a" * 100)) <= 63


def test_phase_helpers() -> None:
    """Test terminal, error and usable phase predicates."""
    assert DownloadPhase.ERR_QUERY_FAILED.is_error()
    assert not DownloadPhase.SUCCEEDED.is_error()
    assert ExecutorPhase.FAILED.is_terminal()
    assert StoragePhase.VERIFIED.is_usable() and StoragePhase.READY.is_usable()
    assert not StoragePhase.VERIFYING.is_usable()


def test_transitions_move_forward_only() -> None:
    """Test allowed and denied transitions."""
    assert (
        advance_phase(
            kind="Download",
            name="default/p",
            current=DownloadPhase.SUCCEEDED,
            target=DownloadPhase.QUERYING,
            transitions=DOWNLOAD_TRANSITIONS,
        )
        == DownloadPhase.QUERYING
    )
    assert advance_phase(
        kind="Executor", name="x", current=None, target=ExecutorPhase.RUNNING, transitions=EXECUTOR_TRANSITIONS
    ) == ExecutorPhase.RUNNING
    with pytest.raises(PhaseTransitionError):
        advance_phase(
            kind="Download",
            name="default/p",
            current=DownloadPhase.ERR_QUERY_FAILED,
            target=DownloadPhase.QUERYING,
            transitions=DOWNLOAD_TRANSITIONS,
        )
    with pytest.raises(PhaseTransitionError):
        advance_phase(
            kind="ContentStorage",
            name="x",
            current=StoragePhase.READY,
            target=StoragePhase.PENDING,
            transitions=STORAGE_TRANSITIONS,
        )
