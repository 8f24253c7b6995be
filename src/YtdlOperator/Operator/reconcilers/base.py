"""Shared reconciler plumbing: loading, status patches, finalizers, child creation."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Type

from ...errors import AlreadyExistsError
from ...types import FINALIZER, CustomResource, StoragePhase, StorageRef, format_timestamp, utcnow
from ...types.phases import advance_phase
from ..config.models import OperatorConfig
from ..orchestrator.models import ObjectKey

__all__ = ["BaseReconciler"]

logger = logging.getLogger(__name__)


def _status_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


class BaseReconciler:
    """Common behaviour for every reconciler.

    Subclasses set ``resource_type`` and ``transitions`` and implement
    ``reconcile``. ``clock`` returns wall-clock UTC time and is injected so
    tests can move time deterministically.
    """

    resource_type: Type[CustomResource]
    transitions: Optional[Mapping] = None

    def __init__(
        self,
        cluster,
        config: Optional[OperatorConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cluster = cluster
        self.config = config or OperatorConfig()
        self.clock = clock

    @property
    def kind(self) -> str:
        return self.resource_type.kind

    def load(self, key: ObjectKey):
        obj = self.cluster.get(self.kind, key.namespace, key.name)
        if obj is None:
            return None
        return self.resource_type.from_object(obj)

    # ----------------------------------------------------------------- status

    def patch_status(self, resource: CustomResource, **fields: Any) -> None:
        """Merge ``fields`` (camelCase) into the status and stamp ``lastUpdated``.

        ``None`` values are written as JSON null, which clears the field.
        """
        status: Dict[str, Any] = {name: _status_value(value) for name, value in fields.items()}
        status["lastUpdated"] = format_timestamp(self.clock())
        self.cluster.patch_status(self.kind, resource.namespace, resource.name, status)
        phase = fields.get("phase")
        if phase is not None:
            logger.info(
                f"{self.kind} {resource.namespace}/{resource.name} -> {_status_value(phase)}"
                + (f": {fields['message']}" if fields.get("message") else ""),
                extra={"resource": f"{self.kind}/{resource.namespace}/{resource.name}"},
            )

    def set_phase(self, resource: CustomResource, target: Enum, **fields: Any) -> None:
        """Validate the transition, then patch the new phase with ``fields``."""
        advance_phase(
            kind=self.kind,
            name=f"{resource.namespace}/{resource.name}",
            current=resource.status.phase,
            target=target,
            transitions=self.transitions,
        )
        if resource.status.phase == target and all(
            _status_value(getattr(resource.status, _snake(name), None)) == _status_value(value)
            for name, value in fields.items()
        ):
            return
        self.patch_status(resource, phase=target, **fields)

    # ------------------------------------------------------------- finalizers

    def ensure_finalizer(self, resource: CustomResource) -> bool:
        """Add the finalizer if missing. Returns True when a patch was made."""
        if FINALIZER in resource.metadata.finalizers:
            return False
        finalizers = [*resource.metadata.finalizers, FINALIZER]
        self.cluster.patch_metadata(
            self.kind, resource.namespace, resource.name, {"finalizers": finalizers}
        )
        resource.metadata.finalizers = finalizers
        return True

    def remove_finalizer(self, resource: CustomResource) -> None:
        if FINALIZER not in resource.metadata.finalizers:
            return
        finalizers = [f for f in resource.metadata.finalizers if f != FINALIZER]
        self.cluster.patch_metadata(
            self.kind, resource.namespace, resource.name, {"finalizers": finalizers}
        )
        logger.debug(f"Removed finalizer from {self.kind} {resource.namespace}/{resource.name}")

    # ---------------------------------------------------------------- storage

    def unready_storage(self, namespace: str, refs: Iterable[StorageRef]) -> Optional[str]:
        """Describe the first referenced storage that cannot be written yet, if any."""
        for ref in refs:
            obj = self.cluster.get(ref.kind, namespace, ref.name)
            if obj is None:
                return f"{ref.kind} {ref.name} not found"
            phase = (obj.get("status") or {}).get("phase")
            try:
                usable = phase is not None and StoragePhase(phase).is_usable()
            except ValueError:
                usable = False
            if not usable:
                return f"{ref.kind} {ref.name} is {phase or 'not yet verified'}"
        return None

    # --------------------------------------------------------------- children

    def create_child(self, kind: str, namespace: str, body: Dict[str, Any]) -> bool:
        """Create ``body`` unless an object of that name exists. Returns True if created."""
        try:
            self.cluster.create(kind, namespace, body)
        except AlreadyExistsError:
            logger.debug(f"{kind} {namespace}/{body['metadata']['name']} already exists")
            return False
        logger.info(f"Created {kind} {namespace}/{body['metadata']['name']}")
        return True


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)
