"""Tests for the ``ytdl-operator`` command line.

Tests cover:
- Restoring admission slots held before a restart
- Wiring of the download and executor orchestrators
- ``show-config`` output formats, schema export and config errors
"""

from __future__ import annotations

import json

import yaml
from typer.testing import CliRunner

from YtdlOperator.Operator.cli import (
    admitted_jobs,
    app,
    build_download_orchestrator,
    build_executor_orchestrator,
)
from YtdlOperator.Operator.orchestrator import ObjectKey

runner = CliRunner()


def _seed(cluster) -> None:
    for name, phase in (("running", "Running"), ("starting", "Starting"), ("done", "Succeeded")):
        cluster.put("DownloadChildProcess", {"metadata": {"name": name}, "spec": {}})
        cluster.set_status("DownloadChildProcess", name, phase=phase)
    cluster.put("Download", {"metadata": {"name": "querying"}, "spec": {}})
    cluster.set_status("Download", "querying", phase="Querying")
    cluster.put("Download", {"metadata": {"name": "idle"}, "spec": {}})
    cluster.set_status("Download", "idle", phase="Succeeded")


def test_admitted_jobs(cluster) -> None:
    """Test that live executors are found and ordered by creation time."""
    _seed(cluster)

    jobs = admitted_jobs(cluster, None)

    assert sorted(str(key) for key, _ in jobs) == sorted(
        str(key)
        for key in (
            ObjectKey("DownloadChildProcess", "default", "running"),
            ObjectKey("DownloadChildProcess", "default", "starting"),
            ObjectKey("Download", "default", "querying"),
        )
    )
    assert all(created is not None for _, created in jobs)


def test_download_orchestrator_restores_gate(cluster, config) -> None:
    """Test that slots in use before a restart count against the limit."""
    _seed(cluster)

    orchestrator = build_download_orchestrator(cluster, config)
    gate = orchestrator._reconcilers["Download"].gate

    assert set(orchestrator._reconcilers) == {
        "Download",
        "DownloadChildProcess",
        "ContentStorage",
        "MetadataTarget",
    }
    assert gate is orchestrator._reconcilers["DownloadChildProcess"].gate
    assert gate.in_flight() == 3


def test_executor_orchestrator_watches_pods(cluster, config) -> None:
    """Test that pod events are mapped back to their Executor."""
    orchestrator = build_executor_orchestrator(cluster, config)
    mapper = orchestrator._watches["Pod"]
    pod = {
        "metadata": {
            "name": "clip",
            "namespace": "default",
            "ownerReferences": [{"kind": "Executor", "name": "clip", "uid": "u", "apiVersion": "v1"}],
        }
    }

    assert list(mapper("MODIFIED", pod)) == [ObjectKey("Executor", "default", "clip")]


def test_show_config_yaml(tmp_path) -> None:
    """Test that the effective config is printed as YAML."""
    path = tmp_path / "config.yaml"
    path.write_text("concurrency: 7\nvpn:\n  enabled: false\n")

    result = runner.invoke(app, ["show-config", "--config", str(path)])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.stdout)
    assert data["concurrency"] == 7
    assert data["vpn"]["enabled"] is False


def test_show_config_json(tmp_path) -> None:
    """Test JSON output."""
    path = tmp_path / "config.yaml"
    path.write_text("concurrency: 3\n")

    result = runner.invoke(app, ["show-config", "--config", str(path), "--format", "json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["concurrency"] == 3


def test_show_config_schema() -> None:
    """Test that the JSON schema names the top-level settings."""
    result = runner.invoke(app, ["show-config", "--schema"])

    assert result.exit_code == 0, result.output
    assert "concurrency" in json.loads(result.stdout)["properties"]


def test_show_config_invalid(tmp_path) -> None:
    """Test that invalid configuration exits with status 2."""
    path = tmp_path / "config.yaml"
    path.write_text("unknown_setting: true\n")

    result = runner.invoke(app, ["show-config", "--config", str(path)])

    assert result.exit_code == 2
