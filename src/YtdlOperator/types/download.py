"""Download and DownloadChildProcess resources."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from .common import CustomResource, ResourceModel, parse_duration
from .phases import ChildProcessPhase, DownloadPhase
from .storage import StorageRef

__all__ = [
    "DownloadSpec",
    "DownloadStatus",
    "Download",
    "ChildProcessSpec",
    "ChildProcessStatus",
    "DownloadChildProcess",
    "INFO_JSONL_KEY",
    "info_configmap_name",
    "query_executor_name",
    "child_name",
    "item_label",
]

INFO_JSONL_KEY = "info.jsonl"

_NAME_MAX = 253
_LABEL_MAX = 63
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")
_LABEL_VALUE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9_.-]*[A-Za-z0-9])?$")


def info_configmap_name(download: str) -> str:
    """ConfigMap holding the query results of ``download``, one JSON record per line."""
    return f"{download}-info"


def query_executor_name(download: str) -> str:
    return f"{download}-query"


def _digest(item_id: str) -> str:
    return hashlib.sha1(item_id.encode("utf-8")).hexdigest()


def child_name(download: str, item_id: str) -> str:
    """Deterministic DownloadChildProcess name for one item of ``download``.

    Item IDs are case-sensitive and may contain characters object names do
    not allow. IDs that are not already valid name segments get a short
    digest suffix so that two IDs differing only in case never collide.

    Examples:
        >>> child_name("playlist", "abc-123")
        'playlist-abc-123'
        >>> child_name("playlist", "dQw4w9WgXcQ").startswith("playlist-dqw4w9wgxcq-")
        True
    """
    segment = _INVALID_NAME_CHARS.sub("-", item_id.lower()).strip("-")
    if segment != item_id:
        segment = f"{segment}-{_digest(item_id)[:6]}" if segment else _digest(item_id)[:12]
    name = f"{download}-{segment}"
    if len(name) > _NAME_MAX:
        name = f"{name[: _NAME_MAX - 13]}-{_digest(item_id)[:12]}"
    return name


def item_label(item_id: str) -> str:
    """Label value identifying an item: the ID itself when it is a valid label value."""
    if len(item_id) <= _LABEL_MAX and _LABEL_VALUE.match(item_id):
        return item_id
    return _digest(item_id)[:_LABEL_MAX]


def _valid_refs(refs: List[str]) -> List[str]:
    for ref in refs:
        StorageRef.parse(ref)
    return refs


class DownloadSpec(ResourceModel):
    input: str = Field(description="URL, ID or query string handed to the fetch tool")
    ignore_errors: bool = Field(default=False, alias="ignoreErrors")
    query_interval: Optional[str] = Field(default=None, alias="queryInterval")
    storage: List[str] = Field(default_factory=list)
    executor: Optional[str] = Field(default=None, description="Worker image override")
    extra: Optional[str] = Field(default=None, description="Extra fetch-tool arguments")
    format: Optional[str] = None

    @field_validator("query_interval")
    @classmethod
    def _valid_interval(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and parse_duration(v).total_seconds() <= 0:
            raise ValueError("queryInterval must be positive")
        return v

    @field_validator("storage")
    @classmethod
    def _valid_storage(cls, v: List[str]) -> List[str]:
        return _valid_refs(v)

    def storage_refs(self) -> List[StorageRef]:
        return [StorageRef.parse(ref) for ref in self.storage]


class DownloadStatus(ResourceModel):
    phase: Optional[DownloadPhase] = None
    message: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    query_start_time: Optional[datetime] = Field(default=None, alias="queryStartTime")
    last_queried: Optional[datetime] = Field(default=None, alias="lastQueried")
    total_videos: Optional[int] = Field(default=None, alias="totalVideos")
    downloaded_videos: Optional[int] = Field(default=None, alias="downloadedVideos")
    failed_videos: Optional[int] = Field(default=None, alias="failedVideos")
    observed_generation: Optional[int] = Field(default=None, alias="observedGeneration")


class Download(CustomResource):
    kind = "Download"
    plural = "downloads"

    spec: DownloadSpec
    status: DownloadStatus = Field(default_factory=DownloadStatus)


class ChildProcessSpec(ResourceModel):
    metadata: str = Field(description="The pre-fetched JSON record for this item")
    output: List[str] = Field(default_factory=list, description="Storage references")
    executor: Optional[str] = None
    extra: Optional[str] = None
    format: Optional[str] = None

    @field_validator("output", mode="before")
    @classmethod
    def _coerce_output(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("output")
    @classmethod
    def _valid_output(cls, v: List[str]) -> List[str]:
        return _valid_refs(v)

    def storage_refs(self) -> List[StorageRef]:
        return [StorageRef.parse(ref) for ref in self.output]


class ChildProcessStatus(ResourceModel):
    phase: Optional[ChildProcessPhase] = None
    message: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    start_time: Optional[datetime] = Field(default=None, alias="startTime")


class DownloadChildProcess(CustomResource):
    kind = "DownloadChildProcess"
    plural = "downloadchildprocesses"

    spec: ChildProcessSpec
    status: ChildProcessStatus = Field(default_factory=ChildProcessStatus)

    def record(self) -> Dict[str, Any]:
        return json.loads(self.spec.metadata)
