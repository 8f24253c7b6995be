# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.config.models",
#   "purpose": "Pydantic v2 models for operator, executor pod and VPN configuration",
#   "sections": [
#     {
#       "id": "requeuepolicy",
#       "name": "RequeuePolicy",
#       "anchor": "class-requeuepolicy",
#       "kind": "class"
#     },
#     {
#       "id": "executorpodconfig",
#       "name": "ExecutorPodConfig",
#       "anchor": "class-executorpodconfig",
#       "kind": "class"
#     },
#     {
#       "id": "vpnconfig",
#       "name": "VpnConfig",
#       "anchor": "class-vpnconfig",
#       "kind": "class"
#     },
#     {
#       "id": "loggingconfig",
#       "name": "LoggingConfig",
#       "anchor": "class-loggingconfig",
#       "kind": "class"
#     },
#     {
#       "id": "operatorconfig",
#       "name": "OperatorConfig",
#       "anchor": "class-operatorconfig",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Operator configuration models (Pydantic v2).

Every setting the controller processes, the worker pods and the VPN sidecar
read lives here, with validation at load time:

- ``concurrency``: the admission limit (legacy env ``CONCURRENCY``)
- ``requeue``: backoff and poll intervals for reconcile passes
- ``executor``: worker pod template settings (image, service account, restart policy)
- ``vpn``: sidecar image, provider and readiness-file settings
- ``logging``: level and output format

All models use ``extra="forbid"`` so typos in a config file fail loudly.
"""

from __future__ import annotations

from typing import ClassVar, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "RequeuePolicy",
    "ExecutorPodConfig",
    "VpnConfig",
    "LoggingConfig",
    "OperatorConfig",
]


class RequeuePolicy(BaseModel):
    """Backoff for failed reconciles and poll intervals for waiting ones."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    base_delay_s: float = Field(default=1.0, description="First retry delay after an error")
    max_delay_s: float = Field(default=300.0, description="Cap on error backoff")
    jitter_s: float = Field(default=0.5, description="Random jitter added to error backoff")
    waiting_s: float = Field(default=5.0, description="Poll interval while waiting for a slot")
    progress_s: float = Field(default=10.0, description="Poll interval while work is in flight")

    @field_validator("base_delay_s", "max_delay_s", "jitter_s", "waiting_s", "progress_s")
    @classmethod
    def validate_delays(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delay values must be >= 0")
        return v


class ExecutorPodConfig(BaseModel):
    """Worker pod template settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    image: str = Field(default="thavlik/ytdl-executor:latest", description="Worker image")
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = "Always"
    service_account_name: Optional[str] = Field(
        default=None, description="Service account for worker pods (EXECUTOR_SERVICE_ACCOUNT_NAME)"
    )
    restart_policy: Literal["Never", "OnFailure"] = "Never"
    log_tail_lines: int = Field(default=20, description="Log lines surfaced in status.message")
    workdir: str = Field(default="/tmp/ytdl", description="Scratch path for artifacts in the pod")
    fetch_command: str = Field(default="yt-dlp", description="Fetch tool invoked by the worker")
    fanout_parallelism: int = Field(
        default=4, description="Threads writing metadata and thumbnails in a download pod"
    )

    @field_validator("fanout_parallelism")
    @classmethod
    def validate_parallelism(cls, v: int) -> int:
        if v < 1:
            raise ValueError("fanout_parallelism must be >= 1")
        return v

    @field_validator("log_tail_lines")
    @classmethod
    def validate_tail(cls, v: int) -> int:
        if v < 0:
            raise ValueError("log_tail_lines must be >= 0")
        return v


class VpnConfig(BaseModel):
    """VPN sidecar and readiness gate settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True, description="Wrap worker pods with the VPN sidecar")
    image: str = Field(default="qmcgaw/gluetun:v3.32.0", description="VPN sidecar image")
    init_image: str = Field(default="curlimages/curl:8.1.2", description="Unmasked-IP probe image")
    provider: str = Field(default="private internet access", description="VPN_SERVICE_PROVIDER")
    credentials_secret: str = Field(default="pia-creds", description="Secret holding VPN login")
    ip_service: str = Field(default="https://api.ipify.org", description="Public IP echo service")
    shared_path: str = Field(default="/shared", description="Mount point of the shared volume")
    ready_timeout_s: float = Field(default=120.0, description="How long the worker waits")
    poll_interval_s: float = Field(default=1.0)
    connect_command: List[str] = Field(
        default_factory=list, description="Command the Python sidecar runs to connect"
    )
    killswitch_command: List[str] = Field(
        default_factory=list, description="Command the Python sidecar runs to block leaks"
    )

    @property
    def ip_path(self) -> str:
        return f"{self.shared_path}/ip"

    @property
    def ready_path(self) -> str:
        return f"{self.shared_path}/ready"


class LoggingConfig(BaseModel):
    """Log level and output format."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    json_output: bool = Field(default=True, description="Emit one JSON object per line")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v!r}")
        return upper


class OperatorConfig(BaseModel):
    """
    Top-level configuration shared by the controller processes and worker pods.

    Example:
        >>> config = OperatorConfig(concurrency=4)
        >>> config.executor.image
        'thavlik/ytdl-executor:latest'
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    concurrency: int = Field(default=1, description="Maximum admitted executor pods")
    workers: int = Field(default=4, description="Reconcile worker threads per process")
    resync_seconds: float = Field(default=300.0, description="Full relist interval")
    namespace: Optional[str] = Field(default=None, description="Watch one namespace only")
    requeue: RequeuePolicy = Field(default_factory=RequeuePolicy)
    executor: ExecutorPodConfig = Field(default_factory=ExecutorPodConfig)
    vpn: VpnConfig = Field(default_factory=VpnConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("concurrency", "workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("resync_seconds")
    @classmethod
    def validate_resync(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("resync_seconds must be > 0")
        return v

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for the startup log line.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        import hashlib
        import json

        normalized = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
