# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.admission",
#   "purpose": "FIFO admission gate bounding concurrently admitted executor pods",
#   "sections": [
#     {
#       "id": "admissiongate",
#       "name": "AdmissionGate",
#       "anchor": "class-admissiongate",
#       "kind": "class"
#     },
#     {
#       "id": "admissiondecision",
#       "name": "AdmissionDecision",
#       "anchor": "class-admissiondecision",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Concurrency-limited job admission.

One gate per controller process bounds how many query Executors and
DownloadChildProcess Executors may be in a non-terminal, admitted state at the
same time (``CONCURRENCY``). Jobs that are otherwise ready call ``try_admit``
on every reconcile pass; a denied job stays ``Waiting``.

**Ordering:**

Waiting jobs are admitted first-waiting-first-admitted. A job's place in line
is taken from its creation timestamp (ties broken by arrival order at the
gate), and a job may only take a free slot when every job ahead of it has
been admitted. When a job finishes, ``release`` frees its slot and returns
the keys of waiting jobs so the caller can enqueue them for re-evaluation.

**Scope:**

The limit is controller-local. A single active controller per resource type
is assumed; multiple replicas would each enforce their own limit.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .orchestrator.models import ObjectKey

__all__ = ["AdmissionGate", "AdmissionDecision"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of one ``try_admit`` call.

    Attributes:
        admitted: Whether the job holds a slot
        position: Zero-based place in the waiting line when denied
        in_flight: Admitted jobs at decision time
        limit: Configured limit
    """

    admitted: bool
    position: int
    in_flight: int
    limit: int

    def describe(self) -> str:
        if self.admitted:
            return f"admitted ({self.in_flight}/{self.limit} slots in use)"
        return (
            f"waiting for a concurrency slot ({self.in_flight}/{self.limit} in use, "
            f"{self.position} ahead in line)"
        )


class AdmissionGate:
    """Thread-safe FIFO gate with a fixed number of slots.

    Example:
        >>> gate = AdmissionGate(limit=1)
        >>> a, b = ObjectKey("DownloadChildProcess", "ns", "a"), ObjectKey("DownloadChildProcess", "ns", "b")
        >>> gate.try_admit(a).admitted, gate.try_admit(b).admitted
        (True, False)
        >>> gate.release(a)
        [ObjectKey(kind='DownloadChildProcess', namespace='ns', name='b')]
        >>> gate.try_admit(b).admitted
        True
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("admission limit must be >= 1")
        self.limit = limit
        self._admitted: Dict[ObjectKey, Tuple] = {}
        self._waiting: Dict[ObjectKey, Tuple] = {}
        self._arrivals = itertools.count()
        self._lock = threading.Lock()

    def _order(self, created_at: Optional[datetime]) -> Tuple:
        stamp = created_at.timestamp() if created_at is not None else float("inf")
        return (stamp, next(self._arrivals))

    def try_admit(self, key: ObjectKey, created_at: Optional[datetime] = None) -> AdmissionDecision:
        """Admit ``key`` if a slot is free and nobody is ahead of it in line.

        Repeated calls for an admitted key are idempotent and return admitted.
        """
        with self._lock:
            if key in self._admitted:
                return AdmissionDecision(True, 0, len(self._admitted), self.limit)

            order = self._waiting.get(key)
            if order is None:
                order = self._order(created_at)
                self._waiting[key] = order

            position = sum(1 for other in self._waiting.values() if other < order)
            free = self.limit - len(self._admitted)
            if position < free:
                del self._waiting[key]
                self._admitted[key] = order
                logger.info(
                    f"Admitted {key} ({len(self._admitted)}/{self.limit} slots in use)"
                )
                return AdmissionDecision(True, 0, len(self._admitted), self.limit)

            return AdmissionDecision(False, position, len(self._admitted), self.limit)

    def release(self, key: ObjectKey) -> List[ObjectKey]:
        """Free the slot held by ``key``, or withdraw it from the line.

        Jobs that stop being eligible while waiting must be withdrawn so they
        do not hold up the jobs behind them.

        Returns:
            Waiting keys in admission order, to be re-evaluated now. Empty if
            nothing changed for them.
        """
        with self._lock:
            was_waiting = self._waiting.pop(key, None) is not None
            if self._admitted.pop(key, None) is not None:
                logger.info(f"Released {key} ({len(self._admitted)}/{self.limit} slots in use)")
            elif not (was_waiting and len(self._admitted) < self.limit):
                return []
            return [k for k, _ in sorted(self._waiting.items(), key=lambda item: item[1])]

    def restore(self, keys: Iterable[Tuple[ObjectKey, Optional[datetime]]]) -> None:
        """Mark jobs that were already running before a controller restart as admitted.

        Restored jobs may exceed the limit momentarily; no new job is admitted
        until enough of them finish.
        """
        with self._lock:
            for key, created_at in keys:
                self._waiting.pop(key, None)
                self._admitted.setdefault(key, self._order(created_at))
            logger.info(f"Restored {len(self._admitted)} admitted jobs")

    def is_admitted(self, key: ObjectKey) -> bool:
        with self._lock:
            return key in self._admitted

    def in_flight(self) -> int:
        with self._lock:
            return len(self._admitted)

    def waiting(self) -> List[ObjectKey]:
        with self._lock:
            return [k for k, _ in sorted(self._waiting.items(), key=lambda item: item[1])]
