"""Executor resource: one VPN-wrapped worker pod running a query or a download."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from .common import CustomResource, ResourceModel
from .phases import ExecutorPhase

__all__ = ["ExecutorSpec", "ExecutorStatus", "Executor", "QUERY", "DOWNLOAD"]

QUERY = "query"
DOWNLOAD = "download"


class ExecutorSpec(ResourceModel):
    mode: Literal["query", "download"]
    metadata: str = Field(
        default="", description="Query input for query mode, the item record for download mode"
    )
    output: List[str] = Field(
        default_factory=list,
        description="Storage references for download mode, the info ConfigMap name for query mode",
    )
    extra: Optional[str] = None
    executor: Optional[str] = Field(default=None, description="Worker image override")
    format: Optional[str] = None
    ignore_errors: bool = Field(default=False, alias="ignoreErrors")


class ExecutorStatus(ResourceModel):
    phase: Optional[ExecutorPhase] = None
    message: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    exit_code: Optional[int] = Field(default=None, alias="exitCode")


class Executor(CustomResource):
    kind = "Executor"
    plural = "executors"

    spec: ExecutorSpec
    status: ExecutorStatus = Field(default_factory=ExecutorStatus)
