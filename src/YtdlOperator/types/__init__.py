"""Resource models for the ``ytdl.beebs.dev/v1`` API group."""

from __future__ import annotations

from .common import (
    API_GROUP,
    API_VERSION,
    API_VERSION_FULL,
    FINALIZER,
    LABEL_APP,
    LABEL_ITEM,
    LABEL_PARENT,
    LABEL_PARENT_UID,
    MANAGER_NAME,
    CustomResource,
    ObjectMeta,
    VerifySpec,
    format_timestamp,
    parse_duration,
    utcnow,
)
from .download import (
    INFO_JSONL_KEY,
    Download,
    DownloadChildProcess,
    child_name,
    info_configmap_name,
    item_label,
    query_executor_name,
)
from .executor import Executor
from .phases import ChildProcessPhase, DownloadPhase, ExecutorPhase, StoragePhase
from .storage import ContentStorage, MetadataTarget, StorageRef

RESOURCE_TYPES = {
    cls.kind: cls
    for cls in (Download, DownloadChildProcess, Executor, ContentStorage, MetadataTarget)
}

__all__ = [
    "API_GROUP",
    "API_VERSION",
    "API_VERSION_FULL",
    "FINALIZER",
    "LABEL_APP",
    "LABEL_ITEM",
    "LABEL_PARENT",
    "LABEL_PARENT_UID",
    "MANAGER_NAME",
    "RESOURCE_TYPES",
    "CustomResource",
    "ObjectMeta",
    "VerifySpec",
    "format_timestamp",
    "parse_duration",
    "utcnow",
    "Download",
    "DownloadChildProcess",
    "INFO_JSONL_KEY",
    "child_name",
    "info_configmap_name",
    "item_label",
    "query_executor_name",
    "Executor",
    "ContentStorage",
    "MetadataTarget",
    "StorageRef",
    "DownloadPhase",
    "ChildProcessPhase",
    "ExecutorPhase",
    "StoragePhase",
]
