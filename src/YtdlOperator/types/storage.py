"""ContentStorage and MetadataTarget resources and the backend sink union.

A sink is a tagged variant: exactly one of ``s3``, ``sql``, ``mongodb`` or
``redis`` is populated. The rule is enforced when the resource is parsed, so a
malformed storage configuration never reaches the write path.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple, Union

from pydantic import Field, field_validator, model_validator

from .common import CustomResource, ResourceModel, VerifySpec, parse_duration
from .phases import StoragePhase

__all__ = [
    "DEFAULT_KEY_TEMPLATE",
    "S3Backend",
    "SqlBackend",
    "MongoBackend",
    "RedisBackend",
    "Backend",
    "SinkSpec",
    "VideoSink",
    "ThumbnailSink",
    "MetadataSink",
    "BasicAuth",
    "WebhookSpec",
    "StorageStatus",
    "ContentStorageSpec",
    "ContentStorage",
    "MetadataTargetSpec",
    "MetadataTarget",
    "StorageRef",
]

DEFAULT_KEY_TEMPLATE = "%(id)s.%(ext)s"

_BACKEND_ARMS = ("s3", "sql", "mongodb", "redis")


class S3Backend(ResourceModel):
    backend: Literal["s3"] = "s3"
    bucket: str
    key: str = DEFAULT_KEY_TEMPLATE
    region: str = "us-east-1"
    endpoint: Optional[str] = None
    secret: Optional[str] = None
    verify: VerifySpec = Field(default_factory=VerifySpec)

    def identity(self) -> Tuple[str, ...]:
        return ("s3", self.secret or "", self.bucket, self.region, self.endpoint or "")


class SqlBackend(ResourceModel):
    backend: Literal["sql"] = "sql"
    secret: str
    dialect: str = "postgresql"
    table: str = "ytdl_metadata"
    key: str = DEFAULT_KEY_TEMPLATE
    verify: VerifySpec = Field(default_factory=VerifySpec)

    def identity(self) -> Tuple[str, ...]:
        return ("sql", self.secret, self.dialect)


class MongoBackend(ResourceModel):
    backend: Literal["mongodb"] = "mongodb"
    secret: str
    database: str = "ytdl"
    collection: str = "metadata"
    key: str = DEFAULT_KEY_TEMPLATE
    verify: VerifySpec = Field(default_factory=VerifySpec)

    def identity(self) -> Tuple[str, ...]:
        return ("mongodb", self.secret, self.database)


class RedisBackend(ResourceModel):
    backend: Literal["redis"] = "redis"
    secret: str
    key: str = DEFAULT_KEY_TEMPLATE
    script: Optional[str] = Field(
        default=None,
        description="Lua script run instead of SET; KEYS[1] is the key, ARGV[1] the payload",
    )
    extra_keys: List[str] = Field(default_factory=list, alias="extraKeys")
    verify: VerifySpec = Field(default_factory=VerifySpec)

    def identity(self) -> Tuple[str, ...]:
        return ("redis", self.secret)


Backend = Union[S3Backend, SqlBackend, MongoBackend, RedisBackend]


class SinkSpec(ResourceModel):
    """One storage destination; exactly one backend arm may be set."""

    s3: Optional[S3Backend] = None
    sql: Optional[SqlBackend] = None
    mongodb: Optional[MongoBackend] = None
    redis: Optional[RedisBackend] = None

    @model_validator(mode="after")
    def _exactly_one_backend(self):
        populated = [arm for arm in _BACKEND_ARMS if getattr(self, arm) is not None]
        if len(populated) != 1:
            raise ValueError(
                f"exactly one of {', '.join(_BACKEND_ARMS)} must be set, got {populated or 'none'}"
            )
        return self

    @property
    def backend(self) -> Backend:
        for arm in _BACKEND_ARMS:
            value = getattr(self, arm)
            if value is not None:
                return value
        raise AssertionError("unreachable: validator guarantees one backend")


class VideoSink(SinkSpec):
    format: Optional[str] = Field(default=None, description="Container format to request")


class ThumbnailSink(SinkSpec):
    format: Optional[Literal["jpg", "png", "webp", "bmp", "gif", "ico", "pgm"]] = None
    width: Optional[int] = None
    height: Optional[int] = None
    filter: Literal["Nearest", "Triangle", "CatmullRom", "Gaussian", "Lanczos3"] = "Lanczos3"

    @field_validator("width", "height")
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("thumbnail dimensions must be > 0")
        return v


class MetadataSink(SinkSpec):
    pass


class BasicAuth(ResourceModel):
    secret: str


class WebhookSpec(ResourceModel):
    url: str
    method: str = "POST"
    timeout: str = "10s"
    headers: Dict[str, str] = Field(default_factory=dict)
    basic_auth: Optional[BasicAuth] = Field(default=None, alias="basicAuth")
    verify: VerifySpec = Field(default_factory=VerifySpec)

    @field_validator("timeout")
    @classmethod
    def _valid_timeout(cls, v: str) -> str:
        parse_duration(v)
        return v

    def timeout_seconds(self) -> float:
        return parse_duration(self.timeout).total_seconds()

    def identity(self) -> Tuple[str, ...]:
        return ("webhook", self.url, self.basic_auth.secret if self.basic_auth else "")


class StorageStatus(ResourceModel):
    phase: Optional[StoragePhase] = None
    message: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    last_verified: Optional[datetime] = Field(default=None, alias="lastVerified")
    observed_generation: Optional[int] = Field(default=None, alias="observedGeneration")


class ContentStorageSpec(ResourceModel):
    video: List[VideoSink] = Field(default_factory=list)
    thumbnail: List[ThumbnailSink] = Field(default_factory=list)
    metadata: List[MetadataSink] = Field(default_factory=list)
    webhook: List[WebhookSpec] = Field(default_factory=list)


class _StorageResource(CustomResource):
    status: StorageStatus = Field(default_factory=StorageStatus)

    def video_sinks(self) -> List[VideoSink]:
        return []

    def thumbnail_sinks(self) -> List[ThumbnailSink]:
        return []

    def metadata_sinks(self) -> List[SinkSpec]:
        return []

    def webhooks(self) -> List[WebhookSpec]:
        return []

    def backends(self) -> List[Backend]:
        sinks = [*self.video_sinks(), *self.thumbnail_sinks(), *self.metadata_sinks()]
        return [sink.backend for sink in sinks]


class ContentStorage(_StorageResource):
    kind = "ContentStorage"
    plural = "contentstorages"

    spec: ContentStorageSpec = Field(default_factory=ContentStorageSpec)

    def video_sinks(self) -> List[VideoSink]:
        return list(self.spec.video)

    def thumbnail_sinks(self) -> List[ThumbnailSink]:
        return list(self.spec.thumbnail)

    def metadata_sinks(self) -> List[SinkSpec]:
        return list(self.spec.metadata)

    def webhooks(self) -> List[WebhookSpec]:
        return list(self.spec.webhook)


class MetadataTargetSpec(SinkSpec):
    webhook: List[WebhookSpec] = Field(default_factory=list)


class MetadataTarget(_StorageResource):
    kind = "MetadataTarget"
    plural = "metadatatargets"

    spec: MetadataTargetSpec

    def metadata_sinks(self) -> List[SinkSpec]:
        return [self.spec]

    def webhooks(self) -> List[WebhookSpec]:
        return list(self.spec.webhook)


class StorageRef(ResourceModel):
    """Reference from a Download to a storage resource.

    A bare name refers to a ContentStorage; ``MetadataTarget/<name>`` refers to
    a MetadataTarget.
    """

    kind: Literal["ContentStorage", "MetadataTarget"] = "ContentStorage"
    name: str

    @classmethod
    def parse(cls, text: str) -> "StorageRef":
        kind, sep, name = text.partition("/")
        if not sep:
            return cls(name=text)
        if kind not in ("ContentStorage", "MetadataTarget") or not name:
            raise ValueError(f"invalid storage reference {text!r}")
        return cls(kind=kind, name=name)

    def __str__(self) -> str:
        if self.kind == "ContentStorage":
            return self.name
        return f"{self.kind}/{self.name}"
