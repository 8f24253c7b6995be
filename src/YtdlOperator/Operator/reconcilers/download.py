# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.reconcilers.download",
#   "purpose": "Download reconciler: query, expand into children, track progress, re-query",
#   "sections": [
#     {
#       "id": "query-executor",
#       "name": "query_executor",
#       "anchor": "function-query-executor",
#       "kind": "function"
#     },
#     {
#       "id": "child-process",
#       "name": "child_process",
#       "anchor": "function-child-process",
#       "kind": "function"
#     },
#     {
#       "id": "downloadreconciler",
#       "name": "DownloadReconciler",
#       "anchor": "class-downloadreconciler",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Download reconciler.

**Lifecycle:**

- ``Pending``: finalizer added, ``observedGeneration`` recorded.
- ``Waiting``: a referenced storage is not usable yet, or the query is waiting
  for an admission slot.
- ``Querying``: the query Executor runs. Its records land in the
  ``<download>-info`` ConfigMap.
- Expansion: one DownloadChildProcess per record, named deterministically from
  the item id, so a repeated expansion creates nothing new for known items.
  ``totalVideos`` and ``lastQueried`` are set, then the query Executor and
  ConfigMap are deleted and the admission slot is released. Every step is
  idempotent, so a crash between steps is repaired by the next pass.
- ``Downloading``: children are counted on every pass. A failed child with
  ``ignoreErrors`` unset ends in ``ErrDownloadFailed``; otherwise the Download
  is ``Succeeded`` once every child is terminal.
- With ``queryInterval`` a ``Succeeded`` Download queries again once
  ``lastQueried + queryInterval`` has passed, subject to admission.

Error phases are absorbing. Editing the spec (a new generation) resets the
Download to ``Pending``; existing children are kept and reused.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ...types import (
    API_VERSION_FULL,
    INFO_JSONL_KEY,
    LABEL_APP,
    LABEL_ITEM,
    LABEL_PARENT,
    LABEL_PARENT_UID,
    ChildProcessPhase,
    Download,
    DownloadPhase,
    Executor,
    ExecutorPhase,
    child_name,
    info_configmap_name,
    item_label,
    parse_duration,
    query_executor_name,
)
from ...types.executor import QUERY
from ...types.phases import DOWNLOAD_TRANSITIONS
from ..admission import AdmissionGate
from ..gc import collect_download
from ..orchestrator.models import ObjectKey, ReconcileOutcome, ReconcileResult
from .base import BaseReconciler

__all__ = ["DownloadReconciler", "query_executor", "child_process", "parse_info"]

logger = logging.getLogger(__name__)


def _parent_labels(download: Download) -> Dict[str, str]:
    return {
        LABEL_APP: "ytdl",
        LABEL_PARENT: download.name,
        LABEL_PARENT_UID: download.metadata.uid or "",
    }


def query_executor(download: Download) -> Dict[str, Any]:
    spec = download.spec
    body_spec: Dict[str, Any] = {
        "mode": QUERY,
        "metadata": spec.input,
        "output": [info_configmap_name(download.name)],
        "ignoreErrors": spec.ignore_errors,
    }
    if spec.extra:
        body_spec["extra"] = spec.extra
    if spec.executor:
        body_spec["executor"] = spec.executor
    return {
        "apiVersion": API_VERSION_FULL,
        "kind": "Executor",
        "metadata": {
            "name": query_executor_name(download.name),
            "namespace": download.namespace,
            "labels": _parent_labels(download),
            "ownerReferences": [download.owner_reference()],
        },
        "spec": body_spec,
    }


def child_process(download: Download, item_id: str, record: str) -> Dict[str, Any]:
    spec = download.spec
    body_spec: Dict[str, Any] = {"metadata": record, "output": list(spec.storage)}
    for field_name in ("executor", "extra", "format"):
        value = getattr(spec, field_name)
        if value:
            body_spec[field_name] = value
    return {
        "apiVersion": API_VERSION_FULL,
        "kind": "DownloadChildProcess",
        "metadata": {
            "name": child_name(download.name, item_id),
            "namespace": download.namespace,
            "labels": {**_parent_labels(download), LABEL_ITEM: item_label(item_id)},
            "ownerReferences": [download.owner_reference()],
        },
        "spec": body_spec,
    }


def parse_info(text: str) -> List[Tuple[str, str]]:
    """``(item id, record line)`` pairs from an info ConfigMap, first occurrence per id."""
    seen: set[str] = set()
    items: List[Tuple[str, str]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable info record")
            continue
        item_id = record.get("id") if isinstance(record, dict) else None
        if not isinstance(item_id, str) or not item_id or item_id in seen:
            continue
        seen.add(item_id)
        items.append((item_id, line))
    return items


class DownloadReconciler(BaseReconciler):
    resource_type = Download
    transitions = DOWNLOAD_TRANSITIONS

    def __init__(self, cluster, config=None, *, gate: AdmissionGate, **kwargs: Any) -> None:
        super().__init__(cluster, config, **kwargs)
        self.gate = gate

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        download = self.load(key)
        if download is None:
            return ReconcileResult(ReconcileOutcome.DELETED, wake=tuple(self.gate.release(key)))

        if download.is_deleting:
            return self._finalize(key, download)

        if self.ensure_finalizer(download):
            return ReconcileResult.updated(0.0)

        status = download.status
        generation = download.metadata.generation
        if status.phase is None:
            self.patch_status(download, phase=DownloadPhase.PENDING, observedGeneration=generation)
            return ReconcileResult.updated(0.0)
        if (
            generation is not None
            and status.observed_generation is not None
            and status.observed_generation != generation
        ):
            return self._reset(key, download)
        if status.phase.is_error():
            return ReconcileResult()

        if status.phase in (DownloadPhase.PENDING, DownloadPhase.WAITING):
            return self._start_query(key, download)
        if status.phase == DownloadPhase.QUERYING:
            return self._await_query(key, download)
        if status.phase == DownloadPhase.DOWNLOADING:
            return self._track(download)
        return self._maybe_requery(key, download)

    # ------------------------------------------------------------- lifecycle

    def _finalize(self, key: ObjectKey, download: Download) -> ReconcileResult:
        report = collect_download(self.cluster, download)
        wake = self.gate.release(key)
        if not report.done:
            return ReconcileResult.waiting(self.config.requeue.waiting_s, *wake)
        self.remove_finalizer(download)
        return ReconcileResult(ReconcileOutcome.DELETED, wake=tuple(wake))

    def _clear_query(self, download: Download) -> None:
        self.cluster.delete("Executor", download.namespace, query_executor_name(download.name))
        self.cluster.delete("ConfigMap", download.namespace, info_configmap_name(download.name))

    def _reset(self, key: ObjectKey, download: Download) -> ReconcileResult:
        # Not a forward transition, so advance_phase is bypassed.
        self._clear_query(download)
        wake = self.gate.release(key)
        self.patch_status(
            download,
            phase=DownloadPhase.PENDING,
            message="spec changed, restarting",
            observedGeneration=download.metadata.generation,
            queryStartTime=None,
        )
        return ReconcileResult.updated(0.0, *wake)

    def _admission_blocker(self, key: ObjectKey, download: Download) -> Tuple[Optional[str], Tuple[ObjectKey, ...]]:
        """Why the query cannot start now, plus keys to wake, or ``(None, ())`` once admitted."""
        blocker = self.unready_storage(download.namespace, download.spec.storage_refs())
        if blocker is not None:
            return blocker, tuple(self.gate.release(key))
        decision = self.gate.try_admit(key, download.metadata.creation_timestamp)
        if not decision.admitted:
            return decision.describe(), ()
        return None, ()

    def _launch_query(self, download: Download) -> ReconcileResult:
        self.create_child("Executor", download.namespace, query_executor(download))
        self.set_phase(download, DownloadPhase.QUERYING, queryStartTime=self.clock(), message=None)
        return ReconcileResult.waiting(self.config.requeue.progress_s)

    def _start_query(self, key: ObjectKey, download: Download) -> ReconcileResult:
        blocker, wake = self._admission_blocker(key, download)
        if blocker is not None:
            self.set_phase(download, DownloadPhase.WAITING, message=blocker)
            return ReconcileResult.waiting(self.config.requeue.waiting_s, *wake)
        return self._launch_query(download)

    def _maybe_requery(self, key: ObjectKey, download: Download) -> ReconcileResult:
        if not download.spec.query_interval:
            return ReconcileResult()
        interval = parse_duration(download.spec.query_interval)
        last = download.status.last_queried or download.status.last_updated
        if last is not None:
            remaining = (last + interval - self.clock()) / timedelta(seconds=1)
            if remaining > 0:
                return ReconcileResult(requeue_after=remaining)
        blocker, wake = self._admission_blocker(key, download)
        if blocker is not None:
            logger.debug(f"Re-query of Download {key} deferred: {blocker}")
            return ReconcileResult.waiting(self.config.requeue.waiting_s, *wake)
        self._clear_query(download)
        logger.info(f"Re-querying Download {download.namespace}/{download.name}")
        return self._launch_query(download)

    def _await_query(self, key: ObjectKey, download: Download) -> ReconcileResult:
        namespace = download.namespace
        configmap = self.cluster.get("ConfigMap", namespace, info_configmap_name(download.name))
        obj = self.cluster.get("Executor", namespace, query_executor_name(download.name))
        if obj is None:
            if configmap is not None:
                return self._expand(key, download, configmap)
            # Query executor lost (restart or manual deletion): run it again.
            if self.gate.try_admit(key, download.metadata.creation_timestamp).admitted:
                self.create_child("Executor", namespace, query_executor(download))
            return ReconcileResult.waiting(self.config.requeue.progress_s)

        executor = Executor.from_object(obj)
        phase = executor.status.phase
        if phase == ExecutorPhase.FAILED:
            return self._query_failed(key, download, executor.status.message or "query executor failed")
        if phase == ExecutorPhase.SUCCEEDED:
            if configmap is None:
                return self._query_failed(key, download, "query finished without publishing its records")
            return self._expand(key, download, configmap)
        return ReconcileResult.waiting(self.config.requeue.progress_s)

    def _query_failed(self, key: ObjectKey, download: Download, reason: str) -> ReconcileResult:
        self._clear_query(download)
        wake = self.gate.release(key)
        self.set_phase(download, DownloadPhase.ERR_QUERY_FAILED, message=f"query failed: {reason}")
        return ReconcileResult.updated(None, *wake)

    def _children(self, download: Download) -> List[Dict[str, Any]]:
        return self.cluster.list(
            "DownloadChildProcess",
            download.namespace,
            {LABEL_PARENT_UID: download.metadata.uid or ""},
        )

    def _expand(self, key: ObjectKey, download: Download, configmap: Dict[str, Any]) -> ReconcileResult:
        items = parse_info((configmap.get("data") or {}).get(INFO_JSONL_KEY, ""))
        names = {child["metadata"]["name"] for child in self._children(download)}
        created = 0
        for item_id, record in items:
            body = child_process(download, item_id, record)
            if body["metadata"]["name"] in names:
                continue
            if self.create_child("DownloadChildProcess", download.namespace, body):
                created += 1
            names.add(body["metadata"]["name"])
        logger.info(
            f"Download {download.namespace}/{download.name}: {len(items)} items queried, "
            f"{created} new children"
        )
        self.set_phase(
            download,
            DownloadPhase.DOWNLOADING,
            totalVideos=len(names),
            lastQueried=self.clock(),
            message=None,
        )
        self._clear_query(download)
        wake = self.gate.release(key)
        return ReconcileResult.updated(0.0, *wake)

    def _track(self, download: Download) -> ReconcileResult:
        children = self._children(download)
        phases = [(child.get("status") or {}).get("phase") for child in children]
        total = len(children)
        succeeded = phases.count(ChildProcessPhase.SUCCEEDED.value)
        failed = phases.count(ChildProcessPhase.FAILED.value)
        counts = {"totalVideos": total, "downloadedVideos": succeeded, "failedVideos": failed}

        if failed and not download.spec.ignore_errors:
            failures = [
                f"{child['metadata']['name']}: {(child.get('status') or {}).get('message') or 'failed'}"
                for child in children
                if (child.get("status") or {}).get("phase") == ChildProcessPhase.FAILED.value
            ]
            self.set_phase(
                download,
                DownloadPhase.ERR_DOWNLOAD_FAILED,
                message=f"{failed} of {total} items failed; first: {failures[0]}",
                **counts,
            )
            return ReconcileResult.updated()

        if succeeded + failed == total:
            message = f"{failed} of {total} items failed" if failed else None
            self.set_phase(download, DownloadPhase.SUCCEEDED, message=message, **counts)
            if download.spec.query_interval:
                return ReconcileResult.updated(parse_duration(download.spec.query_interval).total_seconds())
            return ReconcileResult.updated()

        self.set_phase(download, DownloadPhase.DOWNLOADING, **counts)
        return ReconcileResult.waiting(self.config.requeue.progress_s)
