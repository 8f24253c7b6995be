"""``ytdl-executor``: entrypoint of the worker container in masked pods.

The Executor resource arrives serialised in the ``RESOURCE`` environment
variable. Any failure exits with status 1 so the pod, and in turn its
Executor, ends up ``Failed`` with the log tail as the reason.
"""

from __future__ import annotations

import json
import logging
import os
from functools import partial
from pathlib import Path
from typing import Optional

import typer

from ..errors import ConfigurationError, OperatorError
from ..logging_config import setup_logging
from ..Operator.config import OperatorConfig, load_config
from ..Operator.kube import KubernetesCluster
from ..types import Executor
from ..Vpn.gate import wait_for_vpn
from .download import run_download
from .query import run_query

app = typer.Typer(help="Worker entrypoints for query and download pods", no_args_is_help=True)
logger = logging.getLogger(__name__)

ConfigOption = typer.Option(None, "--config", envvar="YTDL_CONFIG", help="YAML/JSON config file")


def _load(config_path: Optional[str]) -> OperatorConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2)
    setup_logging(config.logging)
    return config


def _resource() -> Executor:
    raw = os.environ.get("RESOURCE")
    if not raw:
        logger.error("RESOURCE environment variable is not set")
        raise typer.Exit(2)
    try:
        return Executor.from_object(json.loads(raw))
    except ValueError as e:
        logger.error(f"RESOURCE is not a valid Executor: {e}")
        raise typer.Exit(2)


def _gate(config: OperatorConfig):
    if not config.vpn.enabled:
        return None
    return partial(
        wait_for_vpn,
        config.vpn.ready_path,
        timeout=config.vpn.ready_timeout_s,
        poll_interval=config.vpn.poll_interval_s,
    )


@app.command()
def query(config_path: Optional[str] = ConfigOption) -> None:
    """Enumerate the items behind a Download and publish their records."""
    config = _load(config_path)
    executor = _resource()
    try:
        records = run_query(
            executor,
            KubernetesCluster.from_environment(),
            command=config.executor.fetch_command,
            configmap=os.environ.get("INFO_CONFIGMAP"),
            wait_ready=_gate(config),
        )
    except OperatorError as e:
        logger.error(f"Query failed: {e.message}", extra={"resource": executor.name})
        raise typer.Exit(1)
    typer.echo(f"{len(records)} records")


@app.command()
def download(config_path: Optional[str] = ConfigOption) -> None:
    """Fetch one item and write it to every referenced storage."""
    config = _load(config_path)
    executor = _resource()
    try:
        run_download(
            executor,
            KubernetesCluster.from_environment(),
            workdir=Path(config.executor.workdir),
            command=config.executor.fetch_command,
            wait_ready=_gate(config),
            max_parallel=config.executor.fanout_parallelism,
        )
    except OperatorError as e:
        logger.error(f"Download failed: {e.message}", extra={"resource": executor.name})
        raise typer.Exit(1)


@app.command("wait-ready")
def wait_ready(
    config_path: Optional[str] = ConfigOption,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait"),
) -> None:
    """Block until the VPN readiness file exists."""
    config = _load(config_path)
    try:
        wait_for_vpn(
            config.vpn.ready_path,
            timeout=timeout if timeout is not None else config.vpn.ready_timeout_s,
            poll_interval=config.vpn.poll_interval_s,
        )
    except OperatorError as e:
        logger.error(e.message)
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
