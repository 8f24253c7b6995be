"""
Structured Logging Utilities

This module centralizes logging setup for the controller processes, worker
pods and the VPN sidecar. Everything runs in containers, so logs go to stderr
either as plain ``LEVEL: message`` lines or as one JSON object per line for
cluster log collectors. Secrets read from Kubernetes must never reach the log
stream, so every structured payload passes through ``mask_sensitive_data``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from .Operator.config.models import LoggingConfig

_MANAGED_ATTR = "_ytdl_managed"

_SENSITIVE_KEYS = {
    "authorization",
    "password",
    "secret",
    "secret_access_key",
    "access_key_id",
    "session_token",
    "security_token",
    "token",
    "openvpn_password",
}


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Args:
        payload: Arbitrary key-value pairs that may contain credentials
            resolved from Kubernetes secrets.

    Returns:
        Copy of the payload where secret fields are replaced with
        `***masked***`. Nested dictionaries are masked recursively.

    Examples:
        >>> mask_sensitive_data({"password": "hunter2", "phase": "Ready"})
        {'password': '***masked***', 'phase': 'Ready'}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting JSON structured logs.

    Resource context passed through ``extra={"resource": ...}`` and free-form
    ``extra={"extra_fields": {...}}`` are merged into the object.

    Examples:
        >>> formatter = JSONFormatter()
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        resource = getattr(record, "resource", None)
        if resource is not None:
            log_obj["resource"] = str(resource)
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            log_obj.update(record.extra_fields)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), default=str)


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Configure the ``YtdlOperator`` logger for a container process.

    Calling it again replaces the handler it installed previously, so CLI
    entrypoints may call it unconditionally.

    Args:
        config: Logging configuration; defaults to INFO with JSON output.

    Returns:
        The configured package logger.

    Examples:
        >>> logger = setup_logging(LoggingConfig(level="DEBUG", json_output=False))
        >>> logger.name
        'YtdlOperator'
    """
    config = config or LoggingConfig()
    logger = logging.getLogger("YtdlOperator")
    logger.setLevel(getattr(logging, config.level, logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_ATTR, False):
            logger.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler(sys.stderr)
    if config.json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    setattr(handler, _MANAGED_ATTR, True)
    logger.addHandler(handler)
    logger.propagate = True
    return logger


__all__ = ["setup_logging", "mask_sensitive_data", "JSONFormatter"]
