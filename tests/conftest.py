"""Shared pytest fixtures: fake cluster, controllable clock and operator config."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from fakes import FakeCluster
from YtdlOperator.Operator.admission import AdmissionGate
from YtdlOperator.Operator.config import OperatorConfig


class Clock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def config() -> OperatorConfig:
    return OperatorConfig(concurrency=2)


@pytest.fixture
def gate(config: OperatorConfig) -> AdmissionGate:
    return AdmissionGate(config.concurrency)


def ready_storage(cluster: FakeCluster, name: str = "archive", namespace: str = "default") -> None:
    """Create a ContentStorage with one S3 video sink that is already Ready."""
    cluster.put(
        "ContentStorage",
        {
            "metadata": {"name": name},
            "spec": {"video": [{"s3": {"bucket": "videos", "secret": "s3-creds"}}]},
        },
        namespace,
    )
    cluster.set_status("ContentStorage", name, namespace, phase="Ready")


def download_body(name: str = "playlist", **spec: Any) -> Dict[str, Any]:
    body_spec: Dict[str, Any] = {"input": "https://example.com/playlist", "storage": ["archive"]}
    body_spec.update(spec)
    return {"metadata": {"name": name}, "spec": body_spec}


def settle(cluster: FakeCluster, reconcilers: Dict[str, Any], rounds: int = 8) -> None:
    """Reconcile every object of every kind, ``rounds`` times over."""
    from YtdlOperator.Operator.orchestrator import ObjectKey

    for _ in range(rounds):
        for kind, reconciler in reconcilers.items():
            for obj in cluster.list(kind):
                metadata = obj["metadata"]
                reconciler.reconcile(ObjectKey(kind, metadata["namespace"], metadata["name"]))
