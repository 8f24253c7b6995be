# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Executor.download",
#   "purpose": "Download mode: fetch one item's artifacts and fan them out to storage",
#   "sections": [
#     {
#       "id": "load-storages",
#       "name": "load_storages",
#       "anchor": "function-load-storages",
#       "kind": "function"
#     },
#     {
#       "id": "fetch-video",
#       "name": "fetch_video",
#       "anchor": "function-fetch-video",
#       "kind": "function"
#     },
#     {
#       "id": "fetch-thumbnail",
#       "name": "fetch_thumbnail",
#       "anchor": "function-fetch-thumbnail",
#       "kind": "function"
#     },
#     {
#       "id": "run-download",
#       "name": "run_download",
#       "anchor": "function-run-download",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Download mode.

Order of work inside a download pod:

1. Resolve the referenced storages and verify their backends. Nothing has
   touched the network through the fetch target yet, so a bad configuration
   fails fast.
2. If every video sink already holds the item's video (keys rendered from the
   record's ``ext``), the video fetch is skipped.
3. Wait for the VPN readiness file.
4. Fetch the video from the pre-fetched record (``--load-info-json``), once per
   distinct video-sink ``format`` (default: the item's own), and the
   thumbnail over HTTP.
5. Fan the artifacts out; webhooks fire once every write succeeded.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import shlex
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

import httpx

from ..errors import FetchError, StorageWriteError
from ..Storage.planner import (
    ArtifactSet,
    FanoutResult,
    WriterPool,
    fan_out,
    verify_backends,
    videos_already_stored,
)
from ..Storage.secrets import SecretResolver
from ..Storage.sinks import Artifact
from ..Storage.verification import CredentialVerificationCache
from ..types import ContentStorage, Executor, MetadataTarget, StorageRef

__all__ = [
    "load_storages",
    "download_command",
    "fetch_video",
    "sink_formats",
    "thumbnail_url",
    "fetch_thumbnail",
    "run_download",
]

logger = logging.getLogger(__name__)

_STORAGE_KINDS = {"ContentStorage": ContentStorage, "MetadataTarget": MetadataTarget}


def load_storages(cluster, namespace: str, refs: Sequence[str]) -> List[Any]:
    """Fetch and parse every referenced storage resource.

    Raises:
        StorageWriteError: If a reference points at nothing.
    """
    storages = []
    for text in refs:
        ref = StorageRef.parse(text)
        obj = cluster.get(ref.kind, namespace, ref.name)
        if obj is None:
            raise StorageWriteError(f"{ref.kind} {namespace}/{ref.name} not found")
        storages.append(_STORAGE_KINDS[ref.kind].from_object(obj))
    return storages


def download_command(
    command: str, info_path: Path, workdir: Path, fmt: Optional[str], extra: Optional[str]
) -> List[str]:
    args = [
        command,
        "--load-info-json",
        str(info_path),
        "--format",
        fmt or "best",
        "-o",
        str(workdir / "%(id)s.%(ext)s"),
    ]
    if extra:
        args.extend(shlex.split(extra))
    return args


def fetch_video(
    record: Mapping[str, Any],
    workdir: Path,
    *,
    command: str = "yt-dlp",
    fmt: Optional[str] = None,
    extra: Optional[str] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> Artifact:
    """Run the fetch tool for one record and return the produced file.

    Raises:
        FetchError: On a non-zero exit or when no output file appears.
    """
    item_id = str(record["id"])
    workdir.mkdir(parents=True, exist_ok=True)
    info_dir = workdir / "info"
    info_dir.mkdir(exist_ok=True)
    info_path = info_dir / f"{item_id}.info.json"
    info_path.write_text(json.dumps(dict(record)), encoding="utf-8")

    args = download_command(command, info_path, workdir, fmt, extra)
    logger.info(f"Downloading {item_id}")
    try:
        completed = runner(args, capture_output=True, text=True)
    except OSError as e:
        raise FetchError(f"could not start {command}: {e}") from e
    if completed.returncode != 0:
        tail = (completed.stderr or "").strip().splitlines()[-3:]
        raise FetchError(
            f"{command} exited with status {completed.returncode}: {' | '.join(tail)}",
            returncode=completed.returncode,
        )

    produced = sorted(
        p
        for p in workdir.iterdir()
        if p.is_file() and p.name.startswith(f"{item_id}.") and not p.name.endswith(".part")
    )
    if not produced:
        raise FetchError(f"{command} produced no file for {item_id}")
    path = produced[0]
    ext = path.suffix.lstrip(".")
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return Artifact(kind="video", ext=ext, content_type=content_type, path=path, metadata=record)


def sink_formats(storages: Sequence[Any], default: Optional[str]) -> List[Optional[str]]:
    """Distinct formats the video sinks ask for, in sink order.

    A sink without its own ``format`` takes ``default``.
    """
    formats: List[Optional[str]] = []
    for storage in storages:
        for sink in storage.video_sinks():
            fmt = sink.format or default
            if fmt not in formats:
                formats.append(fmt)
    return formats


def thumbnail_url(record: Mapping[str, Any]) -> Optional[str]:
    """The record's preferred thumbnail: ``thumbnail``, else the last ``thumbnails`` entry."""
    if record.get("thumbnail"):
        return str(record["thumbnail"])
    for entry in reversed(record.get("thumbnails") or []):
        if isinstance(entry, Mapping) and entry.get("url"):
            return str(entry["url"])
    return None


def fetch_thumbnail(record: Mapping[str, Any], client: httpx.Client) -> Artifact:
    """Download the record's thumbnail image.

    Raises:
        FetchError: If the record has no thumbnail or the request fails.
    """
    url = thumbnail_url(record)
    if url is None:
        raise FetchError(f"record {record.get('id')} has no thumbnail")
    try:
        response = client.get(url, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise FetchError(f"thumbnail fetch failed: {e}") from e
    content_type = response.headers.get("content-type", "").split(";")[0].strip()
    ext = Path(urlparse(url).path).suffix.lstrip(".").lower()
    if not ext:
        guessed = mimetypes.guess_extension(content_type) if content_type else None
        ext = (guessed or ".jpg").lstrip(".")
    if ext == "jpeg":
        ext = "jpg"
    return Artifact(
        kind="thumbnail",
        ext=ext,
        content_type=content_type or f"image/{ext}",
        data=response.content,
        metadata=record,
    )


def run_download(
    executor: Executor,
    cluster,
    *,
    workdir: Path,
    command: str = "yt-dlp",
    wait_ready: Optional[Callable[[], Any]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    http_client: Optional[httpx.Client] = None,
    cache: Optional[CredentialVerificationCache] = None,
    opener: Optional[Callable[..., Any]] = None,
    max_parallel: int = 4,
) -> FanoutResult:
    """Fetch one item and store it everywhere its storages ask for.

    Raises:
        VerificationError: A backend failed verification; nothing was fetched.
        FetchError: The video or thumbnail could not be fetched.
        StorageWriteError: A write failed.
    """
    record = json.loads(executor.spec.metadata)
    namespace = executor.namespace
    storages = load_storages(cluster, namespace, executor.spec.output)
    resolver = SecretResolver(cluster, namespace)
    cache = cache or CredentialVerificationCache()
    verify_backends(namespace, storages, cache, resolver)

    owned_client = http_client is None
    client = http_client or httpx.Client(timeout=60.0)
    pool = WriterPool(resolver) if opener is None else WriterPool(resolver, opener)
    try:
        wants_video = any(storage.video_sinks() for storage in storages)
        wants_thumbnail = any(storage.thumbnail_sinks() for storage in storages)
        stored = wants_video and videos_already_stored(storages, record, pool)
        if stored:
            logger.info(f"Video {record.get('id')} already present in every video sink, skipping fetch")

        if wait_ready is not None:
            wait_ready()

        video = None
        videos: Dict[str, Artifact] = {}
        if wants_video and not stored:
            default_format = executor.spec.format
            formats = sink_formats(storages, default_format)
            for index, fmt in enumerate(formats):
                fetched = fetch_video(
                    record,
                    workdir if len(formats) == 1 else workdir / f"format-{index}",
                    command=command,
                    fmt=fmt,
                    extra=executor.spec.extra,
                    runner=runner,
                )
                if fmt == default_format:
                    video = fetched
                else:
                    videos[fmt] = fetched
        thumbnail = fetch_thumbnail(record, client) if wants_thumbnail else None

        artifacts = ArtifactSet(
            metadata=record, video=video, thumbnail=thumbnail, video_stored=stored, videos=videos
        )
        result = fan_out(
            namespace,
            storages,
            artifacts,
            pool,
            cache,
            resolver,
            max_parallel=max_parallel,
            http_client=client,
        )
    finally:
        pool.close()
        if owned_client:
            client.close()

    for failure in result.webhook_failures:
        logger.warning(f"Webhook failure (item still stored): {failure}")
    logger.info(f"Stored {record.get('id')} with {len(result.outcomes)} writes")
    return result
