"""Work item and reconcile result types.

A work item is an ``ObjectKey``: the ``(kind, namespace, name)`` of one
resource instance. Reconcilers never receive object snapshots from the queue;
they re-read the current state so that a stale event cannot drive a decision.

**Reconcile lifecycle:**

    QUEUED
      ↓ (get) → marked processing; re-adds are held as dirty
      ↓
    PROCESSING
      ↓ (done)
      ├→ requeue_after set → delayed re-add
      ├→ wake keys → immediate add for each
      └→ dirty → immediate re-add (an event arrived mid-reconcile)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional, Tuple


class ObjectKey(NamedTuple):
    """Identity of one resource instance in the work queue."""

    kind: str
    namespace: str
    name: str

    @classmethod
    def for_object(cls, obj: Mapping[str, Any], kind: Optional[str] = None) -> "ObjectKey":
        metadata = obj.get("metadata", {})
        return cls(
            kind or obj["kind"],
            metadata.get("namespace") or "default",
            metadata["name"],
        )

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class ReconcileOutcome(str, Enum):
    """What a reconcile pass did.

    - NOOP: state already converged
    - UPDATED: status or children were written
    - WAITING: a precondition (slot, verification, pod progress) is not met yet
    - DELETED: the object is gone or its finalizer was released
    """

    NOOP = "noop"
    UPDATED = "updated"
    WAITING = "waiting"
    DELETED = "deleted"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of one reconcile pass.

    Attributes:
        outcome: Summary of what the pass did
        requeue_after: Seconds until the key should be reconciled again, if at all
        wake: Other keys to enqueue now (freed admission slots, parents of
            finished children)
    """

    outcome: ReconcileOutcome = ReconcileOutcome.NOOP
    requeue_after: Optional[float] = None
    wake: Tuple[ObjectKey, ...] = field(default_factory=tuple)

    @classmethod
    def waiting(cls, seconds: float, *wake: ObjectKey) -> "ReconcileResult":
        return cls(ReconcileOutcome.WAITING, requeue_after=seconds, wake=tuple(wake))

    @classmethod
    def updated(cls, requeue_after: Optional[float] = None, *wake: ObjectKey) -> "ReconcileResult":
        return cls(ReconcileOutcome.UPDATED, requeue_after=requeue_after, wake=tuple(wake))

    def with_wake(self, *keys: ObjectKey) -> "ReconcileResult":
        if not keys:
            return self
        return ReconcileResult(self.outcome, self.requeue_after, self.wake + tuple(keys))
