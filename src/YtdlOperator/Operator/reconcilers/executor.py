# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.reconcilers.executor",
#   "purpose": "Executor reconciler: one masked worker pod per Executor, pod state mirrored into status",
#   "sections": [
#     {
#       "id": "worker-state",
#       "name": "worker_state",
#       "anchor": "function-worker-state",
#       "kind": "function"
#     },
#     {
#       "id": "executorreconciler",
#       "name": "ExecutorReconciler",
#       "anchor": "class-executorreconciler",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Executor reconciler.

An Executor is a pod-lifecycle shim. It knows how to template the masked pod
and how to read the worker's fate back out of it; it knows nothing about
storage, admission or what the worker does.

Phase mapping:

- no pod yet: create it, ``Starting``
- ``PodScheduled=False``: stay ``Starting`` with the scheduler's message
- worker container running: ``Running``
- worker container terminated: ``Succeeded`` on exit 0, else ``Failed``, with
  ``exitCode`` and the tail of the worker log in ``message``; the pod is then
  deleted
- pod ``Failed`` before the worker ran (init container, eviction): ``Failed``

The worker container is inspected rather than the pod phase because the VPN
sidecar keeps running after the worker exits.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from ...errors import ClusterError
from ...types import Executor, ExecutorPhase
from ...types.executor import QUERY
from ...types.phases import EXECUTOR_TRANSITIONS
from ...Vpn.pod import WORKER_CONTAINER_NAME, masked_pod
from ..orchestrator.models import ObjectKey, ReconcileOutcome, ReconcileResult
from .base import BaseReconciler

__all__ = ["ExecutorReconciler", "worker_state", "scheduling_message", "executor_pod"]

logger = logging.getLogger(__name__)


def worker_state(pod: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the ``state`` block of the worker container, or ``{}`` if not reported yet."""
    for status in (pod.get("status") or {}).get("containerStatuses") or []:
        if status.get("name") == WORKER_CONTAINER_NAME:
            return status.get("state") or {}
    return {}


def scheduling_message(pod: Mapping[str, Any]) -> Optional[str]:
    """The scheduler's complaint when ``PodScheduled`` is False."""
    for condition in (pod.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "PodScheduled" and condition.get("status") == "False":
            return condition.get("message") or "PodScheduled is False, but no message was provided"
    return None


def executor_pod(executor: Executor, config) -> Dict[str, Any]:
    """Pod manifest for ``executor`` under operator ``config``."""
    env: List[Dict[str, str]] = [
        {"name": "RESOURCE", "value": json.dumps(executor.to_dict())},
        {"name": "CONCURRENCY", "value": str(config.concurrency)},
    ]
    if executor.spec.mode == QUERY and executor.spec.output:
        env.append({"name": "INFO_CONFIGMAP", "value": executor.spec.output[0]})
    return masked_pod(
        name=executor.name,
        namespace=executor.namespace,
        worker={"command": ["ytdl-executor", executor.spec.mode], "env": env},
        executor=config.executor,
        vpn=config.vpn,
        image=executor.spec.executor,
        labels=executor.metadata.labels,
        owner_references=[executor.owner_reference()],
    )


class ExecutorReconciler(BaseReconciler):
    resource_type = Executor
    transitions = EXECUTOR_TRANSITIONS

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        executor = self.load(key)
        if executor is None or executor.is_deleting:
            self.cluster.delete("Pod", key.namespace, key.name)
            return ReconcileResult(ReconcileOutcome.DELETED)

        phase = executor.status.phase
        if phase is not None and phase.is_terminal():
            # The pod is deleted after the terminal status is written.
            self.cluster.delete("Pod", key.namespace, key.name)
            return ReconcileResult()
        if phase is None:
            self.set_phase(executor, ExecutorPhase.PENDING)
            return ReconcileResult.updated(0.0)

        progress = self.config.requeue.progress_s
        pod = self.cluster.get("Pod", key.namespace, key.name)
        if pod is None:
            if phase == ExecutorPhase.RUNNING:
                self._finish(executor, None, "worker pod disappeared while running")
                return ReconcileResult.updated()
            self.create_child("Pod", key.namespace, executor_pod(executor, self.config))
            self.set_phase(executor, ExecutorPhase.STARTING)
            return ReconcileResult.waiting(progress)

        state = worker_state(pod)
        terminated = state.get("terminated")
        if terminated is not None:
            exit_code = terminated.get("exitCode")
            self._finish(executor, exit_code, terminated.get("reason"))
            return ReconcileResult.updated()

        pod_status = pod.get("status") or {}
        if pod_status.get("phase") == "Failed":
            reason = pod_status.get("message") or pod_status.get("reason") or "pod failed"
            self._finish(executor, None, reason)
            return ReconcileResult.updated()

        if state.get("running") is not None:
            started = state["running"].get("startedAt") or pod_status.get("startTime")
            self.set_phase(
                executor,
                ExecutorPhase.RUNNING,
                startTime=started or executor.status.start_time or self.clock(),
                message=None,
            )
            return ReconcileResult.waiting(progress)

        message = scheduling_message(pod)
        self.set_phase(executor, ExecutorPhase.STARTING, message=message)
        return ReconcileResult.waiting(progress)

    def _log_tail(self, executor: Executor) -> str:
        try:
            return self.cluster.read_log(
                executor.namespace,
                executor.name,
                container=WORKER_CONTAINER_NAME,
                tail_lines=self.config.executor.log_tail_lines,
            ).strip()
        except ClusterError as e:
            logger.warning(f"Could not read log of pod {executor.namespace}/{executor.name}: {e}")
            return ""

    def _finish(self, executor: Executor, exit_code: Optional[int], reason: Optional[str]) -> None:
        succeeded = exit_code == 0
        tail = self._log_tail(executor) if exit_code is not None else ""
        if succeeded:
            message = tail.splitlines()[-1] if tail else "completed"
        else:
            detail = f"exit code {exit_code}" if exit_code is not None else (reason or "failed")
            message = f"{detail}: {tail}" if tail else detail
        self.set_phase(
            executor,
            ExecutorPhase.SUCCEEDED if succeeded else ExecutorPhase.FAILED,
            exitCode=exit_code,
            message=message,
        )
        self.cluster.delete("Pod", executor.namespace, executor.name)
