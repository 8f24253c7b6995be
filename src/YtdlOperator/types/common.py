# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.types.common",
#   "purpose": "Shared resource metadata models, API constants and duration parsing",
#   "sections": [
#     {
#       "id": "parse-duration",
#       "name": "parse_duration",
#       "anchor": "function-parse-duration",
#       "kind": "function"
#     },
#     {
#       "id": "objectmeta",
#       "name": "ObjectMeta",
#       "anchor": "class-objectmeta",
#       "kind": "class"
#     },
#     {
#       "id": "customresource",
#       "name": "CustomResource",
#       "anchor": "class-customresource",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Shared building blocks for the ``ytdl.beebs.dev/v1`` resource models.

Every managed kind is a namespaced object with ``metadata``, ``spec`` and
``status``. Resources arrive from the cluster as plain dictionaries; the models
here parse them with camelCase aliases and ignore fields they do not know about
so that server-populated metadata never breaks validation.

**Constants:**

- ``API_GROUP`` / ``API_VERSION``: the custom resource group
- ``FINALIZER``: added to Downloads and DownloadChildProcesses so that the
  garbage-collection pass runs before the object disappears
- ``LABEL_*``: labels linking children to their parent Download
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "API_GROUP",
    "API_VERSION",
    "API_VERSION_FULL",
    "FINALIZER",
    "MANAGER_NAME",
    "LABEL_PARENT",
    "LABEL_PARENT_UID",
    "LABEL_ITEM",
    "LABEL_APP",
    "ResourceModel",
    "OwnerReference",
    "ObjectMeta",
    "CustomResource",
    "VerifySpec",
    "parse_duration",
    "format_timestamp",
    "utcnow",
]

API_GROUP = "ytdl.beebs.dev"
API_VERSION = "v1"
API_VERSION_FULL = f"{API_GROUP}/{API_VERSION}"
FINALIZER = f"{API_GROUP}/finalizer"
MANAGER_NAME = "ytdl-operator"

LABEL_PARENT = f"{API_GROUP}/parent"
LABEL_PARENT_UID = f"{API_GROUP}/parent-uid"
LABEL_ITEM = f"{API_GROUP}/item"
LABEL_APP = "app"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration string such as ``"10s"``, ``"48h"`` or ``"1h30m"``.

    Args:
        value: Duration text made of one or more ``<number><unit>`` groups.

    Returns:
        The parsed duration.

    Raises:
        ValueError: If the text is empty or contains anything besides
            recognised duration groups.
    """
    text = value.strip().lower()
    if not text:
        raise ValueError("duration must not be empty")
    position = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}; expected e.g. '10s', '30m', '48h'")
    return timedelta(seconds=total)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp the way the API server does (RFC 3339, ``Z`` suffix)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ResourceModel(BaseModel):
    """Base for cluster-facing models: camelCase aliases, unknown fields ignored."""

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True, extra="ignore")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class OwnerReference(ResourceModel):
    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = Field(default=None, alias="blockOwnerDeletion")


class ObjectMeta(ResourceModel):
    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    creation_timestamp: Optional[datetime] = Field(default=None, alias="creationTimestamp")
    deletion_timestamp: Optional[datetime] = Field(default=None, alias="deletionTimestamp")
    labels: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list, alias="ownerReferences")


class CustomResource(ResourceModel):
    """A parsed ``ytdl.beebs.dev/v1`` object.

    Subclasses set ``kind`` and ``plural`` and narrow ``spec``/``status``.
    """

    kind: ClassVar[str] = ""
    plural: ClassVar[str] = ""

    metadata: ObjectMeta

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]):
        return cls.model_validate(dict(obj))

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or "default"

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def owner_reference(self) -> Dict[str, Any]:
        """Owner reference pointing at this object, for children it creates."""
        return OwnerReference(
            api_version=API_VERSION_FULL,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.metadata.uid or "",
            controller=True,
            block_owner_deletion=True,
        ).to_dict()


class VerifySpec(ResourceModel):
    """Credential verification policy attached to every backend."""

    skip: bool = Field(default=False, description="Never perform a handshake")
    interval: Optional[str] = Field(
        default=None, description="Re-verify once this long has elapsed; unset means once"
    )

    def interval_seconds(self) -> Optional[float]:
        if self.interval is None:
            return None
        return parse_duration(self.interval).total_seconds()
