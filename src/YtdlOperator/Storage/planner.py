# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Storage.planner",
#   "purpose": "Storage fan-out: plan per-sink writes, execute them, notify webhooks",
#   "sections": [
#     {
#       "id": "artifactset",
#       "name": "ArtifactSet",
#       "anchor": "class-artifactset",
#       "kind": "class"
#     },
#     {
#       "id": "plan-writes",
#       "name": "plan_writes",
#       "anchor": "function-plan-writes",
#       "kind": "function"
#     },
#     {
#       "id": "writerpool",
#       "name": "WriterPool",
#       "anchor": "class-writerpool",
#       "kind": "class"
#     },
#     {
#       "id": "execute-plan",
#       "name": "execute_plan",
#       "anchor": "function-execute-plan",
#       "kind": "function"
#     },
#     {
#       "id": "fan-out",
#       "name": "fan_out",
#       "anchor": "function-fan-out",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Storage fan-out planner.

Turns the storage resources referenced by one item plus the item's artifacts
into an ordered write plan, then executes it:

1. **Plan**: every sink of every referenced storage becomes a ``WriteOp`` with
   its key rendered from the sink's template. Ops with the same backend
   configuration and key are collapsed, so two storages sharing a bucket do
   not upload twice. Thumbnails are resized/converted per sink here.
2. **Execute**: video ops run **sequentially** in configured order; metadata
   and thumbnail ops run concurrently on a thread pool.
3. **Notify**: only when every write succeeded, each distinct webhook is sent
   the metadata JSON. Webhook failures are reported but do not fail the item.

``fan_out`` wraps all three and consults the credential verification cache
before any write, so an unverified backend is never written to.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import StorageWriteError, VerificationError, describe_failure
from ..types.storage import Backend, MetadataTarget, VideoSink, WebhookSpec
from .secrets import SecretResolver
from .sinks import Artifact, SinkWriter, open_writer
from .template import render_key
from .thumbnails import transform_thumbnail
from .verification import CredentialVerificationCache
from .webhooks import notify_webhooks

__all__ = [
    "ArtifactSet",
    "WriteOp",
    "FanoutPlan",
    "WriteOutcome",
    "FanoutResult",
    "WriterPool",
    "plan_writes",
    "execute_plan",
    "videos_already_stored",
    "verify_backends",
    "fan_out",
]

logger = logging.getLogger(__name__)

StorageResource = Any  # ContentStorage | MetadataTarget


def _destination(backend: Backend) -> Tuple[str, ...]:
    """Backend identity narrowed to everything a writer is fixed to.

    That is the table or collection written to, plus a Redis sink's script and
    extra keys, so sinks sharing a secret but not a write recipe stay apart.
    """
    return (
        *backend.identity(),
        getattr(backend, "table", ""),
        getattr(backend, "collection", ""),
        getattr(backend, "script", None) or "",
        "\x1f".join(getattr(backend, "extra_keys", ())),
    )


@dataclass(frozen=True)
class ArtifactSet:
    """Everything fetched for one item.

    ``video`` is fetched with the item's own format; ``videos`` holds the
    fetches for video sinks that ask for a different ``format``, keyed by it.
    ``video_stored`` marks a video every video sink already holds; its writes
    are left out of the plan.
    """

    metadata: Mapping[str, Any]
    video: Optional[Artifact] = None
    thumbnail: Optional[Artifact] = None
    video_stored: bool = False
    videos: Mapping[str, Artifact] = field(default_factory=dict)

    def video_for(self, sink: VideoSink) -> Optional[Artifact]:
        if sink.format and sink.format in self.videos:
            return self.videos[sink.format]
        return self.video

    def metadata_artifact(self) -> Artifact:
        return Artifact(
            kind="metadata",
            ext="json",
            content_type="application/json",
            data=json.dumps(dict(self.metadata)).encode("utf-8"),
            metadata=self.metadata,
        )


@dataclass(frozen=True)
class WriteOp:
    kind: str
    storage: str
    backend: Backend
    key: str
    artifact: Artifact

    def identity(self) -> Tuple[str, ...]:
        return (self.kind, *_destination(self.backend), self.key)


@dataclass
class FanoutPlan:
    video: List[WriteOp] = field(default_factory=list)
    concurrent: List[WriteOp] = field(default_factory=list)
    webhooks: List[WebhookSpec] = field(default_factory=list)

    def ops(self) -> List[WriteOp]:
        return [*self.video, *self.concurrent]


@dataclass(frozen=True)
class WriteOutcome:
    op: WriteOp
    location: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FanoutResult:
    outcomes: List[WriteOutcome] = field(default_factory=list)
    webhook_failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    def failures(self) -> List[Tuple[str, str]]:
        return [
            (f"{o.op.kind}:{o.op.storage}:{o.op.key}", o.error or "")
            for o in self.outcomes
            if not o.ok
        ]


def _storage_name(storage: StorageResource) -> str:
    if isinstance(storage, MetadataTarget):
        return f"MetadataTarget/{storage.name}"
    return storage.name


def plan_writes(storages: Sequence[StorageResource], artifacts: ArtifactSet) -> FanoutPlan:
    """Expand storages into an ordered, deduplicated write plan.

    Raises:
        StorageWriteError: If a sink needs an artifact that was not fetched.
        TemplateError: If a key template cannot be rendered from the metadata.
    """
    plan = FanoutPlan()
    seen: set[Tuple[str, ...]] = set()
    seen_webhooks: set[Tuple[str, ...]] = set()
    metadata = artifacts.metadata

    def _add(bucket: List[WriteOp], op: WriteOp) -> None:
        if op.identity() in seen:
            logger.debug(f"Skipping duplicate write {op.identity()}")
            return
        seen.add(op.identity())
        bucket.append(op)

    for storage in storages:
        name = _storage_name(storage)
        for sink in storage.video_sinks():
            if artifacts.video_stored:
                continue
            video = artifacts.video_for(sink)
            if video is None:
                raise StorageWriteError(f"storage {name} has video sinks but no video was fetched")
            backend = sink.backend
            key = render_key(backend.key, metadata, video.ext)
            _add(plan.video, WriteOp("video", name, backend, key, video))
        for sink in storage.thumbnail_sinks():
            if artifacts.thumbnail is None:
                raise StorageWriteError(
                    f"storage {name} has thumbnail sinks but no thumbnail was fetched"
                )
            data, ext = transform_thumbnail(
                artifacts.thumbnail.payload(), sink, artifacts.thumbnail.ext
            )
            thumb = Artifact(
                kind="thumbnail",
                ext=ext,
                content_type=f"image/{'jpeg' if ext == 'jpg' else ext}",
                data=data,
                metadata=metadata,
            )
            backend = sink.backend
            _add(plan.concurrent, WriteOp("thumbnail", name, backend, render_key(backend.key, metadata, ext), thumb))
        for sink in storage.metadata_sinks():
            backend = sink.backend
            meta = artifacts.metadata_artifact()
            _add(plan.concurrent, WriteOp("metadata", name, backend, render_key(backend.key, metadata, "json"), meta))
        for webhook in storage.webhooks():
            if webhook.identity() not in seen_webhooks:
                seen_webhooks.add(webhook.identity())
                plan.webhooks.append(webhook)
    return plan


class WriterPool:
    """Opens one writer per destination and closes them all at the end."""

    def __init__(
        self,
        resolver: SecretResolver,
        opener: Callable[..., SinkWriter] = open_writer,
    ) -> None:
        self._resolver = resolver
        self._opener = opener
        self._writers: Dict[Tuple[str, ...], SinkWriter] = {}
        self._lock = threading.Lock()

    def get(self, backend: Backend) -> SinkWriter:
        identity = _destination(backend)
        with self._lock:
            writer = self._writers.get(identity)
            if writer is None:
                creds = self._resolver.resolve(backend.secret, backend=backend.backend)
                writer = self._opener(backend, creds)
                self._writers[identity] = writer
            return writer

    def close(self) -> None:
        with self._lock:
            writers, self._writers = list(self._writers.values()), {}
        for writer in writers:
            try:
                writer.close()
            except Exception as e:
                logger.warning(f"Closing writer failed: {e}")

    def __enter__(self) -> "WriterPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def _write(pool: WriterPool, op: WriteOp) -> WriteOutcome:
    try:
        location = pool.get(op.backend).write(op.key, op.artifact)
    except Exception as e:
        logger.error(f"Write of {op.kind} to {op.storage} ({op.key}) failed: {e}")
        return WriteOutcome(op, error=describe_failure(e))
    logger.info(f"Wrote {op.kind} to {location}")
    return WriteOutcome(op, location=location)


def execute_plan(plan: FanoutPlan, pool: WriterPool, *, max_parallel: int = 4) -> FanoutResult:
    """Run a plan: video ops in order, the rest concurrently.

    Every op is attempted; failures are collected in the result rather than
    aborting the remaining writes.
    """
    result = FanoutResult()
    for op in plan.video:
        result.outcomes.append(_write(pool, op))
    if plan.concurrent:
        with ThreadPoolExecutor(max_workers=max(1, max_parallel), thread_name_prefix="fanout") as executor:
            result.outcomes.extend(executor.map(lambda op: _write(pool, op), plan.concurrent))
    return result


def videos_already_stored(
    storages: Sequence[StorageResource], metadata: Mapping[str, Any], pool: WriterPool
) -> bool:
    """Return True when every video sink already holds this item's video.

    Keys are rendered with the extension the metadata record predicts
    (``ext``), which is what the fetch tool will produce. A sink with its own
    ``format`` makes the extension unpredictable, so it always counts as
    missing.
    """
    ext = metadata.get("ext")
    sinks: List[VideoSink] = [sink for storage in storages for sink in storage.video_sinks()]
    if not sinks or not ext or any(sink.format for sink in sinks):
        return False
    for sink in sinks:
        backend = sink.backend
        if not pool.get(backend).exists(render_key(backend.key, metadata, ext)):
            return False
    return True


def verify_backends(
    namespace: str,
    storages: Sequence[StorageResource],
    cache: CredentialVerificationCache,
    resolver: SecretResolver,
) -> None:
    """Verify every backend referenced by ``storages``, waiting on in-flight checks.

    Raises:
        VerificationError: Naming the first backend that failed.
    """
    for storage in storages:
        for backend in storage.backends():
            result = cache.verify(
                namespace,
                backend,
                lambda backend=backend: resolver.resolve(backend.secret, backend=backend.backend),
                wait=True,
            )
            if not result.ok:
                raise VerificationError(
                    f"storage {_storage_name(storage)}: {result.message}", backend=backend.backend
                )


def fan_out(
    namespace: str,
    storages: Sequence[StorageResource],
    artifacts: ArtifactSet,
    pool: WriterPool,
    cache: CredentialVerificationCache,
    resolver: SecretResolver,
    *,
    max_parallel: int = 4,
    http_client: Any = None,
) -> FanoutResult:
    """Verify, plan, write and notify for one item.

    Raises:
        VerificationError: If any backend fails verification (nothing is written).
        StorageWriteError: If any write failed; webhooks are not sent in that case.
    """
    verify_backends(namespace, storages, cache, resolver)
    plan = plan_writes(storages, artifacts)
    result = execute_plan(plan, pool, max_parallel=max_parallel)
    if not result.ok:
        failures = result.failures()
        raise StorageWriteError(
            f"{len(failures)} of {len(result.outcomes)} storage writes failed: "
            + "; ".join(f"{target}: {error}" for target, error in failures),
            failures=failures,
        )
    if plan.webhooks:
        result.webhook_failures = notify_webhooks(
            plan.webhooks,
            artifacts.metadata,
            lambda secret: resolver.resolve(secret, backend="webhook"),
            client=http_client,
        )
    return result
