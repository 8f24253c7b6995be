"""ContentStorage and MetadataTarget reconciler.

Both kinds hold a set of backends and webhooks whose credentials are checked
through the shared ``CredentialVerificationCache``. The reconciler never
blocks on a handshake another pass already started; it re-queues instead.

``Verified`` is reported while a re-verify interval is pending and ``Ready``
when no further check is scheduled. An edit (new generation) drops the cached
outcomes for every target of the resource and verifies again.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Type

from ...Storage.secrets import SecretResolver
from ...Storage.verification import CredentialVerificationCache, Target, VerifyResult, VerifyState
from ...types import ContentStorage, MetadataTarget, StoragePhase
from ...types.phases import STORAGE_TRANSITIONS
from ...types.storage import WebhookSpec
from ..orchestrator.models import ObjectKey, ReconcileOutcome, ReconcileResult
from .base import BaseReconciler

__all__ = ["StorageReconciler", "describe_target"]

logger = logging.getLogger(__name__)


def describe_target(target: Target) -> str:
    if isinstance(target, WebhookSpec):
        return f"webhook {target.url}"
    return f"{target.backend} {'/'.join(part for part in target.identity()[2:] if part) or target.backend}"


def _targets(storage) -> List[Target]:
    return [*storage.backends(), *storage.webhooks()]


def _secret_of(target: Target) -> Optional[str]:
    if isinstance(target, WebhookSpec):
        return target.basic_auth.secret if target.basic_auth else None
    return target.secret


class StorageReconciler(BaseReconciler):
    """Reconciles one storage kind; construct once per kind."""

    transitions = STORAGE_TRANSITIONS

    def __init__(
        self,
        cluster,
        config=None,
        *,
        resource_type: Type[Any] = ContentStorage,
        cache: CredentialVerificationCache,
        **kwargs: Any,
    ) -> None:
        if resource_type not in (ContentStorage, MetadataTarget):
            raise ValueError(f"not a storage kind: {resource_type.__name__}")
        super().__init__(cluster, config, **kwargs)
        self.resource_type = resource_type
        self.cache = cache

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        storage = self.load(key)
        if storage is None:
            return ReconcileResult(ReconcileOutcome.DELETED)
        if storage.is_deleting:
            return ReconcileResult()

        generation = storage.metadata.generation
        status = storage.status
        if status.phase is None:
            self.set_phase(storage, StoragePhase.PENDING, observedGeneration=generation)
            return ReconcileResult.updated(0.0)

        if status.phase == StoragePhase.PENDING or (
            generation is not None and status.observed_generation != generation
        ):
            for target in _targets(storage):
                self.cache.invalidate(storage.namespace, target)
            self.set_phase(
                storage, StoragePhase.VERIFYING, observedGeneration=generation, message=None
            )
            storage.status.phase = StoragePhase.VERIFYING
            storage.status.message = None
            storage.status.observed_generation = generation

        return self._verify(storage)

    def _verify(self, storage) -> ReconcileResult:
        namespace = storage.namespace
        resolver = SecretResolver(self.cluster, namespace)
        results: List[tuple[Target, VerifyResult]] = []
        for target in _targets(storage):
            backend = "webhook" if isinstance(target, WebhookSpec) else target.backend
            result = self.cache.verify(
                namespace,
                target,
                lambda secret=_secret_of(target), backend=backend: resolver.resolve(
                    secret, backend=backend
                ),
            )
            if result.state == VerifyState.IN_FLIGHT:
                return ReconcileResult.waiting(self.config.requeue.waiting_s)
            results.append((target, result))

        checked = [result.checked_at for _, result in results if result.checked_at is not None]
        last_verified = max(checked) if checked else storage.status.last_verified
        recheck = [
            seconds
            for target, _ in results
            if (seconds := self.cache.seconds_until_recheck(namespace, target)) is not None
        ]
        requeue_after = max(min(recheck), 1.0) if recheck else None

        failed = [(target, result) for target, result in results if not result.ok]
        if failed:
            target, result = failed[0]
            self.set_phase(
                storage,
                StoragePhase.ERR_VERIFY_FAILED,
                message=f"{describe_target(target)}: {result.message}",
                lastVerified=last_verified,
            )
            return ReconcileResult(requeue_after=requeue_after)

        phase = StoragePhase.VERIFIED if recheck else StoragePhase.READY
        self.set_phase(storage, phase, message=None, lastVerified=last_verified)
        return ReconcileResult(requeue_after=requeue_after)
