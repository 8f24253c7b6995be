"""Watch-and-reconcile machinery: work queue, worker pool and keyed limits."""

from __future__ import annotations

from .limits import KeyedLimiter
from .models import ObjectKey, ReconcileOutcome, ReconcileResult
from .queue import WorkQueue
from .scheduler import (
    EventMapper,
    Orchestrator,
    OrchestratorConfig,
    Reconciler,
    owner_keys,
    self_keys,
)

__all__ = [
    "KeyedLimiter",
    "ObjectKey",
    "ReconcileOutcome",
    "ReconcileResult",
    "WorkQueue",
    "EventMapper",
    "Orchestrator",
    "OrchestratorConfig",
    "Reconciler",
    "owner_keys",
    "self_keys",
]
