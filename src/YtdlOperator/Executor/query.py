"""Query mode: enumerate the items behind a Download's input.

The worker runs the fetch tool in metadata-only mode (``--dump-json``), which
prints one JSON record per item. Valid records are published to the info
ConfigMap named by the Executor's ``output`` (owned by the same Download), so
the Download reconciler can create one child per record without ever running
the fetch tool itself.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import AlreadyExistsError, QueryError
from ..types import INFO_JSONL_KEY, LABEL_APP, Executor

__all__ = ["query_command", "parse_records", "publish_records", "run_query"]

logger = logging.getLogger(__name__)


def query_command(command: str, executor: Executor) -> List[str]:
    spec = executor.spec
    args = [command, "--dump-json"]
    if spec.ignore_errors:
        args.append("--ignore-errors")
    if spec.extra:
        args.extend(shlex.split(spec.extra))
    args.append(spec.metadata)
    return args


def parse_records(lines: Sequence[str]) -> List[str]:
    """Keep lines that are JSON objects with an ``id``, first occurrence per id wins.

    Lines are returned verbatim so downstream consumers see exactly what the
    fetch tool produced.
    """
    seen: set[str] = set()
    records: List[str] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping non-JSON output line: {e}")
            continue
        item_id = record.get("id") if isinstance(record, dict) else None
        if not isinstance(item_id, str) or not item_id:
            logger.warning("Skipping record without an id")
            continue
        if item_id in seen:
            continue
        seen.add(item_id)
        records.append(line)
    return records


def publish_records(cluster, executor: Executor, configmap: str, records: Sequence[str]) -> None:
    """Create (or replace) the info ConfigMap, owned like the Executor is."""
    body: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": configmap,
            "namespace": executor.namespace,
            "labels": {LABEL_APP: "ytdl", **executor.metadata.labels},
            "ownerReferences": [ref.to_dict() for ref in executor.metadata.owner_references],
        },
        "data": {INFO_JSONL_KEY: "\n".join(records)},
    }
    try:
        cluster.create("ConfigMap", executor.namespace, body)
    except AlreadyExistsError:
        # Left over from an earlier attempt of this query.
        logger.info(f"Replacing existing ConfigMap {executor.namespace}/{configmap}")
        cluster.delete("ConfigMap", executor.namespace, configmap)
        cluster.create("ConfigMap", executor.namespace, body)


def run_query(
    executor: Executor,
    cluster,
    *,
    command: str = "yt-dlp",
    configmap: Optional[str] = None,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    wait_ready: Optional[Callable[[], Any]] = None,
) -> List[str]:
    """Run the query and publish its records.

    Args:
        executor: The query Executor (``spec.metadata`` is the input)
        cluster: ``Cluster`` used to publish the ConfigMap
        command: Fetch tool executable
        configmap: ConfigMap name; defaults to the first ``spec.output`` entry
        popen: Process factory, for tests
        wait_ready: VPN gate, called before the fetch tool starts

    Returns:
        The published records.

    Raises:
        QueryError: If the tool exits non-zero (and ``ignoreErrors`` is unset or
            nothing was enumerated), or no ConfigMap name is known.
    """
    name = configmap or (executor.spec.output[0] if executor.spec.output else None)
    if not name:
        raise QueryError("query executor names no info ConfigMap")
    if wait_ready is not None:
        wait_ready()

    args = query_command(command, executor)
    logger.info(f"Querying {executor.spec.metadata!r}")
    try:
        process = popen(args, stdout=subprocess.PIPE, stderr=None, text=True)
    except OSError as e:
        raise QueryError(f"could not start {command}: {e}") from e
    with process:
        lines = list(process.stdout)
        returncode = process.wait()

    records = parse_records(lines)
    if returncode != 0 and not (executor.spec.ignore_errors and records):
        raise QueryError(
            f"{command} exited with status {returncode} after {len(records)} records",
            returncode=returncode,
        )
    if returncode != 0:
        logger.warning(f"{command} exited with status {returncode}; keeping {len(records)} records")

    publish_records(cluster, executor, name, records)
    logger.info(f"Published {len(records)} records to ConfigMap {executor.namespace}/{name}")
    return records
