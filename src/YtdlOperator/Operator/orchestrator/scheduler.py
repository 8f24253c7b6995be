"""Orchestrator: watch dispatchers, periodic resync and the reconcile worker pool.

This module provides the Orchestrator class that:
- Manages a bounded pool of worker threads draining the ``WorkQueue``
- Runs one watch loop per observed kind, mapping events to work keys
- Relists every primary kind periodically so missed events are recovered
- Re-queues failed reconciles with exponential backoff
- Coordinates graceful shutdown

**Architecture:**

    Orchestrator (main)
      ├─ Watch Loops: cluster events → ObjectKeys (self, owner or parent)
      ├─ Resync Loop: relist primary kinds every ``resync_seconds``
      └─ Worker Threads: get key → reconcile → requeue / wake / backoff

**Usage:**

    orch = Orchestrator(
        OrchestratorConfig.from_operator_config(config),
        cluster,
        reconcilers={"Executor": ExecutorReconciler(...)},
        watches={"Executor": self_keys("Executor"), "Pod": owner_keys("Executor")},
    )
    orch.start()
    ...
    orch.stop()

A key is never processed by two workers at once; see ``WorkQueue``.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from ...errors import TransientClusterError
from .models import ObjectKey, ReconcileResult
from .queue import WorkQueue

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
    "Reconciler",
    "EventMapper",
    "self_keys",
    "owner_keys",
]

logger = logging.getLogger(__name__)

EventMapper = Callable[[str, Dict[str, Any]], Iterable[ObjectKey]]


class Reconciler(Protocol):
    kind: str

    def reconcile(self, key: ObjectKey) -> ReconcileResult: ...


def self_keys(kind: str) -> EventMapper:
    """Map events for ``kind`` to the key of the object itself."""

    def _map(event_type: str, obj: Dict[str, Any]) -> Iterable[ObjectKey]:
        return [ObjectKey.for_object(obj, kind)]

    return _map


def owner_keys(*owner_kinds: str) -> EventMapper:
    """Map events to the keys of the object's owners of the given kinds."""

    def _map(event_type: str, obj: Dict[str, Any]) -> Iterable[ObjectKey]:
        metadata = obj.get("metadata", {})
        namespace = metadata.get("namespace") or "default"
        return [
            ObjectKey(ref["kind"], namespace, ref["name"])
            for ref in metadata.get("ownerReferences") or []
            if ref.get("kind") in owner_kinds
        ]

    return _map


class OrchestratorConfig:
    """Configuration for Orchestrator."""

    def __init__(
        self,
        workers: int = 4,
        resync_seconds: float = 300.0,
        namespace: Optional[str] = None,
        base_delay_s: float = 1.0,
        max_delay_s: float = 300.0,
        jitter_s: float = 0.5,
    ) -> None:
        """Initialize orchestrator configuration.

        Args:
            workers: Reconcile worker threads
            resync_seconds: Interval between full relists
            namespace: Restrict watches and relists to one namespace
            base_delay_s: First backoff after a failed reconcile
            max_delay_s: Backoff cap
            jitter_s: Random jitter added to each backoff
        """
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.namespace = namespace
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter_s = jitter_s

    @classmethod
    def from_operator_config(cls, config: Any) -> "OrchestratorConfig":
        return cls(
            workers=config.workers,
            resync_seconds=config.resync_seconds,
            namespace=config.namespace,
            base_delay_s=config.requeue.base_delay_s,
            max_delay_s=config.requeue.max_delay_s,
            jitter_s=config.requeue.jitter_s,
        )


class Orchestrator:
    """Watch-and-reconcile loop runner.

    Attributes:
        config: OrchestratorConfig with tuning parameters
        cluster: Cluster used for watches and relists
        queue: WorkQueue shared by all loops
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        cluster: Any,
        reconcilers: Mapping[str, Reconciler],
        watches: Optional[Mapping[str, EventMapper]] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.queue = queue or WorkQueue()
        self._reconcilers = dict(reconcilers)
        self._watches = dict(watches or {kind: self_keys(kind) for kind in reconcilers})
        self._failures: Dict[ObjectKey, int] = {}
        self._failures_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Run an initial relist, then start watch, resync and worker threads."""
        logger.info(
            f"Starting orchestrator: kinds={sorted(self._reconcilers)} workers={self.config.workers}"
        )
        self.resync()

        for i in range(self.config.workers):
            self._spawn(self._worker_loop, f"worker-{i}")
        for kind in self._watches:
            self._spawn(self._watch_loop, f"watch-{kind}", kind)
        self._spawn(self._resync_loop, "resync")

        logger.info(f"Orchestrator started: {len(self._threads)} threads")

    def _spawn(self, target: Callable[..., None], name: str, *args: Any) -> None:
        t = threading.Thread(target=target, args=args, daemon=True, name=name)
        t.start()
        self._threads.append(t)

    def stop(self) -> None:
        """Signal stop and wait for threads."""
        logger.info("Orchestrator stopping")
        self._stop.set()
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout=5)
        logger.info("Orchestrator stopped")

    def wait(self) -> None:
        """Block until ``stop`` is called from another thread or a signal handler."""
        self._stop.wait()

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    def resync(self) -> None:
        """Enqueue every object of every reconciled kind."""
        for kind in self._reconcilers:
            try:
                objects = self.cluster.list(kind, self.config.namespace)
            except Exception as e:
                logger.warning(f"Relist of {kind} failed: {e}")
                continue
            for obj in objects:
                self.queue.add(ObjectKey.for_object(obj, kind))
        logger.debug(f"Resync complete: {self.queue.stats()}")

    def process_one(self, timeout: Optional[float] = None) -> Optional[ObjectKey]:
        """Reconcile the next ready key.

        Returns:
            The key that was processed, or None if none became ready in time.
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return None
        try:
            result = self._reconcilers[key.kind].reconcile(key)
        except TransientClusterError as e:
            delay = self._backoff(key)
            logger.warning(f"Transient error reconciling {key}: {e}; retry in {delay:.1f}s")
            self.queue.add_after(key, delay)
        except Exception as e:
            delay = self._backoff(key)
            logger.error(f"Reconcile of {key} failed: {e}; retry in {delay:.1f}s", exc_info=True)
            self.queue.add_after(key, delay)
        else:
            with self._failures_lock:
                self._failures.pop(key, None)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
            for other in result.wake:
                self.queue.add(other)
            logger.debug(f"Reconciled {key}: {result.outcome.value}")
        finally:
            self.queue.done(key)
        return key

    def _backoff(self, key: ObjectKey) -> float:
        with self._failures_lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.config.base_delay_s * (2**failures), self.config.max_delay_s)
        return delay + random.uniform(0, self.config.jitter_s)

    def _worker_loop(self) -> None:
        logger.debug("Worker loop started")
        while not self._stop.is_set():
            try:
                self.process_one(timeout=1.0)
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
        logger.debug("Worker loop stopped")

    def _watch_loop(self, kind: str) -> None:
        mapper = self._watches[kind]
        logger.debug(f"Watch loop started: {kind}")
        while not self._stop.is_set():
            try:
                for event_type, obj in self.cluster.watch(kind, self.config.namespace, self._stop):
                    for key in mapper(event_type, obj):
                        if key.kind in self._reconcilers:
                            self.queue.add(key)
            except Exception as e:
                logger.warning(f"Watch on {kind} interrupted: {e}")
            self._stop.wait(1.0)
        logger.debug(f"Watch loop stopped: {kind}")

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.config.resync_seconds):
            self.resync()
