# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.reconcilers.child_process",
#   "purpose": "DownloadChildProcess reconciler: admission, download Executor, phase mirroring",
#   "sections": [
#     {
#       "id": "childprocessreconciler",
#       "name": "ChildProcessReconciler",
#       "anchor": "class-childprocessreconciler",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""DownloadChildProcess reconciler.

One child is one item of a Download. Its life:

1. ``Pending``: finalizer added.
2. Until every referenced storage is usable the child is ``Waiting`` and out of
   the admission line, so it never blocks children behind it.
3. ``try_admit`` on the admission gate. Denied: ``Waiting`` with the line
   position. Admitted: the download Executor is created and the child is
   ``Starting``.
4. The Executor's phase is mirrored: ``Running``, then ``Succeeded`` or
   ``Failed``. Reaching a terminal phase frees the slot, wakes the next
   waiting children and the parent Download.

Deleting a child deletes its Executor and frees its slot before the finalizer
is released.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ...types import (
    API_VERSION_FULL,
    LABEL_APP,
    LABEL_PARENT,
    ChildProcessPhase,
    DownloadChildProcess,
    Executor,
    ExecutorPhase,
)
from ...types.executor import DOWNLOAD
from ...types.phases import CHILD_PROCESS_TRANSITIONS
from ..admission import AdmissionGate
from ..orchestrator.models import ObjectKey, ReconcileOutcome, ReconcileResult
from .base import BaseReconciler

__all__ = ["ChildProcessReconciler", "download_executor"]

logger = logging.getLogger(__name__)

_MIRRORED = {
    ExecutorPhase.PENDING: ChildProcessPhase.STARTING,
    ExecutorPhase.STARTING: ChildProcessPhase.STARTING,
    ExecutorPhase.RUNNING: ChildProcessPhase.RUNNING,
    ExecutorPhase.SUCCEEDED: ChildProcessPhase.SUCCEEDED,
    ExecutorPhase.FAILED: ChildProcessPhase.FAILED,
}


def download_executor(child: DownloadChildProcess) -> Dict[str, Any]:
    """Executor manifest running the download of ``child``'s item."""
    spec = child.spec
    return {
        "apiVersion": API_VERSION_FULL,
        "kind": "Executor",
        "metadata": {
            "name": child.name,
            "namespace": child.namespace,
            "labels": {**child.metadata.labels, LABEL_APP: "ytdl"},
            "ownerReferences": [child.owner_reference()],
        },
        "spec": {
            key: value
            for key, value in {
                "mode": DOWNLOAD,
                "metadata": spec.metadata,
                "output": list(spec.output),
                "extra": spec.extra,
                "executor": spec.executor,
                "format": spec.format,
            }.items()
            if value is not None
        },
    }


class ChildProcessReconciler(BaseReconciler):
    resource_type = DownloadChildProcess
    transitions = CHILD_PROCESS_TRANSITIONS

    def __init__(self, cluster, config=None, *, gate: AdmissionGate, **kwargs: Any) -> None:
        super().__init__(cluster, config, **kwargs)
        self.gate = gate

    @staticmethod
    def _parent_key(child: DownloadChildProcess) -> Optional[ObjectKey]:
        parent = child.metadata.labels.get(LABEL_PARENT)
        if not parent:
            return None
        return ObjectKey("Download", child.namespace, parent)

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        child = self.load(key)
        if child is None:
            return ReconcileResult(ReconcileOutcome.DELETED, wake=tuple(self.gate.release(key)))
        parents = tuple(k for k in [self._parent_key(child)] if k is not None)

        if child.is_deleting:
            self.cluster.delete("Executor", key.namespace, key.name)
            wake = self.gate.release(key)
            self.remove_finalizer(child)
            return ReconcileResult(ReconcileOutcome.DELETED, wake=(*wake, *parents))

        phase = child.status.phase
        if phase is not None and phase.is_terminal():
            return ReconcileResult(wake=tuple(self.gate.release(key)))

        if self.ensure_finalizer(child) or phase is None:
            if phase is None:
                self.set_phase(child, ChildProcessPhase.PENDING)
            return ReconcileResult.updated(0.0)

        if phase in (ChildProcessPhase.PENDING, ChildProcessPhase.WAITING):
            return self._admit(key, child)
        return self._mirror(key, child, parents)

    def _admit(self, key: ObjectKey, child: DownloadChildProcess) -> ReconcileResult:
        waiting_s = self.config.requeue.waiting_s
        blocker = self.unready_storage(child.namespace, child.spec.storage_refs())
        if blocker is not None:
            wake = self.gate.release(key)
            self.set_phase(child, ChildProcessPhase.WAITING, message=blocker)
            return ReconcileResult.waiting(waiting_s, *wake)

        decision = self.gate.try_admit(key, child.metadata.creation_timestamp)
        if not decision.admitted:
            self.set_phase(child, ChildProcessPhase.WAITING, message=decision.describe())
            return ReconcileResult.waiting(waiting_s)

        self.create_child("Executor", child.namespace, download_executor(child))
        self.set_phase(
            child, ChildProcessPhase.STARTING, startTime=self.clock(), message=None
        )
        return ReconcileResult.waiting(self.config.requeue.progress_s)

    def _mirror(self, key: ObjectKey, child: DownloadChildProcess, parents) -> ReconcileResult:
        obj = self.cluster.get("Executor", child.namespace, child.name)
        if obj is None:
            # Lost between admission and now (or removed by hand): recreate.
            self.create_child("Executor", child.namespace, download_executor(child))
            return ReconcileResult.waiting(self.config.requeue.progress_s)

        executor = Executor.from_object(obj)
        executor_phase = executor.status.phase or ExecutorPhase.PENDING
        target = _MIRRORED[executor_phase]
        fields: Dict[str, Any] = {"message": executor.status.message}
        if target == ChildProcessPhase.RUNNING and executor.status.start_time is not None:
            fields["startTime"] = executor.status.start_time
        self.set_phase(child, target, **fields)

        if target.is_terminal():
            wake = self.gate.release(key)
            return ReconcileResult.updated(None, *wake, *parents)
        return ReconcileResult.waiting(self.config.requeue.progress_s)
