"""``ytdl-operator``: the controller processes.

Two processes share this entrypoint:

- ``manage-downloads`` reconciles Downloads, DownloadChildProcesses and both
  storage kinds, and owns the admission gate
- ``manage-executors`` reconciles Executors into masked worker pods

Both run until SIGTERM or SIGINT.
"""

from __future__ import annotations

import json
import logging
import signal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import typer
import yaml

from ..errors import ConfigurationError
from ..logging_config import mask_sensitive_data, setup_logging
from ..Storage.verification import CredentialVerificationCache
from ..types import ContentStorage, MetadataTarget, ObjectMeta
from ..types.phases import ChildProcessPhase, DownloadPhase
from .admission import AdmissionGate
from .config import OperatorConfig, export_config_schema, load_config
from .kube import KubernetesCluster
from .orchestrator import (
    EventMapper,
    ObjectKey,
    Orchestrator,
    OrchestratorConfig,
    owner_keys,
    self_keys,
)
from .reconcilers import (
    ChildProcessReconciler,
    DownloadReconciler,
    ExecutorReconciler,
    StorageReconciler,
)

app = typer.Typer(help="Kubernetes operator for yt-dlp downloads", no_args_is_help=True)
logger = logging.getLogger(__name__)

ConfigOption = typer.Option(None, "--config", envvar="YTDL_CONFIG", help="YAML/JSON config file")

_ADMITTED_CHILD_PHASES = {ChildProcessPhase.STARTING.value, ChildProcessPhase.RUNNING.value}


def _load(config_path: Optional[str], overrides: Optional[Dict[str, Any]] = None) -> OperatorConfig:
    try:
        config = load_config(config_path, cli_overrides=overrides)
    except ConfigurationError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2)
    setup_logging(config.logging)
    logger.info(f"Configuration loaded (hash {config.config_hash()[:12]})")
    return config


def _chain(*mappers: EventMapper) -> EventMapper:
    def _map(event_type: str, obj: Dict[str, Any]) -> Iterable[ObjectKey]:
        return [key for mapper in mappers for key in mapper(event_type, obj)]

    return _map


def admitted_jobs(cluster, namespace: Optional[str]) -> List[Tuple[ObjectKey, Any]]:
    """Jobs that held an admission slot before a restart.

    Children in ``Starting`` or ``Running`` and Downloads in ``Querying`` all
    have a live Executor and count against the limit.
    """
    jobs: List[Tuple[ObjectKey, Any]] = []
    for kind, phases in (
        ("DownloadChildProcess", _ADMITTED_CHILD_PHASES),
        ("Download", {DownloadPhase.QUERYING.value}),
    ):
        for obj in cluster.list(kind, namespace):
            if (obj.get("status") or {}).get("phase") not in phases:
                continue
            metadata = ObjectMeta.model_validate(obj["metadata"])
            jobs.append((ObjectKey.for_object(obj, kind), metadata.creation_timestamp))
    return jobs


def _serve(orchestrator: Orchestrator) -> None:
    def _shutdown(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        orchestrator.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    orchestrator.start()
    orchestrator.wait()


def build_download_orchestrator(cluster, config: OperatorConfig) -> Orchestrator:
    gate = AdmissionGate(config.concurrency)
    gate.restore(admitted_jobs(cluster, config.namespace))
    cache = CredentialVerificationCache()
    reconcilers: Mapping[str, Any] = {
        "Download": DownloadReconciler(cluster, config, gate=gate),
        "DownloadChildProcess": ChildProcessReconciler(cluster, config, gate=gate),
        "ContentStorage": StorageReconciler(
            cluster, config, resource_type=ContentStorage, cache=cache
        ),
        "MetadataTarget": StorageReconciler(
            cluster, config, resource_type=MetadataTarget, cache=cache
        ),
    }
    watches = {
        "Download": self_keys("Download"),
        "DownloadChildProcess": _chain(
            self_keys("DownloadChildProcess"), owner_keys("Download")
        ),
        "ContentStorage": self_keys("ContentStorage"),
        "MetadataTarget": self_keys("MetadataTarget"),
        "Executor": owner_keys("Download", "DownloadChildProcess"),
    }
    return Orchestrator(
        OrchestratorConfig.from_operator_config(config), cluster, reconcilers, watches
    )


def build_executor_orchestrator(cluster, config: OperatorConfig) -> Orchestrator:
    return Orchestrator(
        OrchestratorConfig.from_operator_config(config),
        cluster,
        {"Executor": ExecutorReconciler(cluster, config)},
        {"Executor": self_keys("Executor"), "Pod": owner_keys("Executor")},
    )


@app.command("manage-downloads")
def manage_downloads(
    config_path: Optional[str] = ConfigOption,
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", envvar="CONCURRENCY", help="Maximum admitted executor pods"
    ),
) -> None:
    """Reconcile Downloads, their children and storage resources."""
    config = _load(config_path, {"concurrency": concurrency})
    cluster = KubernetesCluster.from_environment()
    _serve(build_download_orchestrator(cluster, config))


@app.command("manage-executors")
def manage_executors(config_path: Optional[str] = ConfigOption) -> None:
    """Reconcile Executors into masked worker pods."""
    config = _load(config_path)
    cluster = KubernetesCluster.from_environment()
    _serve(build_executor_orchestrator(cluster, config))


@app.command("show-config")
def show_config(
    config_path: Optional[str] = ConfigOption,
    schema: bool = typer.Option(False, "--schema", help="Print the JSON schema instead"),
    format_output: str = typer.Option("yaml", "--format", "-f", help="yaml or json"),
) -> None:
    """Print the effective configuration."""
    if schema:
        typer.echo(json.dumps(export_config_schema(), indent=2))
        return
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2)
    data = mask_sensitive_data(config.model_dump(mode="json"))
    if format_output == "json":
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(yaml.safe_dump(data, sort_keys=False))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
