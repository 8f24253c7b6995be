"""Operator configuration: pydantic models and the layered loader."""

from __future__ import annotations

from .loader import export_config_schema, load_config
from .models import ExecutorPodConfig, LoggingConfig, OperatorConfig, RequeuePolicy, VpnConfig

__all__ = [
    "OperatorConfig",
    "ExecutorPodConfig",
    "VpnConfig",
    "LoggingConfig",
    "RequeuePolicy",
    "load_config",
    "export_config_schema",
]
