"""Garbage collection for a deleted Download.

Everything a Download creates carries its ``parent-uid`` label, so one label
query per kind finds it all, including objects whose owner references were
never set because creation raced with deletion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..types import LABEL_PARENT_UID, Download, info_configmap_name

__all__ = ["CollectionReport", "collect_download"]

logger = logging.getLogger(__name__)

_CHILD_KINDS = ("DownloadChildProcess", "Executor", "Pod")


@dataclass
class CollectionReport:
    deleted: int = 0
    remaining: int = 0

    @property
    def done(self) -> bool:
        return self.remaining == 0


def collect_download(cluster, download: Download) -> CollectionReport:
    """Delete the children, executors, pods and info ConfigMap of ``download``.

    Objects that are already terminating are not deleted again; they count as
    remaining until their own finalizers are released.
    """
    report = CollectionReport()
    namespace = download.namespace
    selector = {LABEL_PARENT_UID: download.metadata.uid or ""}
    for kind in _CHILD_KINDS:
        for obj in cluster.list(kind, namespace, selector):
            metadata = obj.get("metadata", {})
            if metadata.get("deletionTimestamp"):
                report.remaining += 1
                continue
            if cluster.delete(kind, namespace, metadata["name"]):
                report.deleted += 1
                if metadata.get("finalizers"):
                    report.remaining += 1
    if cluster.delete("ConfigMap", namespace, info_configmap_name(download.name)):
        report.deleted += 1
    logger.info(
        f"Collected Download {namespace}/{download.name}: "
        f"deleted={report.deleted} remaining={report.remaining}"
    )
    return report
