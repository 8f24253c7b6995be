"""Exception taxonomy for the operator, its worker pods and the VPN sidecar.

Failures fall into five groups, each with its own handling:

- **Transient infrastructure** (``TransientClusterError``, ``ConflictError``):
  re-queued with backoff, never surfaced as a terminal phase.
- **Verification** (``VerificationError``): surfaced as ``ErrVerifyFailed`` on
  the storage resource.
- **Query** (``QueryError``): surfaced as ``ErrQueryFailed`` on the Download.
- **Per-item** (``FetchError``, ``StorageWriteError``, ``TemplateError``):
  surfaced as ``Failed`` on the DownloadChildProcess.
- **VPN masking** (``VpnMaskingError``, ``VpnNotReadyError``): fatal inside
  the pod, so the Executor reports ``Failed``.
"""

from __future__ import annotations

from typing import Any

from YtdlOperator.errors.tenacity_policies import (
    OperationType,
    create_contextual_retry_policy,
    is_transient_api_error,
)

__all__ = [
    "OperatorError",
    "ConfigurationError",
    "ClusterError",
    "TransientClusterError",
    "ConflictError",
    "AlreadyExistsError",
    "PhaseTransitionError",
    "VerificationError",
    "TemplateError",
    "StorageWriteError",
    "QueryError",
    "FetchError",
    "VpnMaskingError",
    "VpnNotReadyError",
    "describe_failure",
    "OperationType",
    "create_contextual_retry_policy",
    "is_transient_api_error",
]


class OperatorError(Exception):
    """Base class carrying a message plus structured details for logging."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(OperatorError):
    """Raised when operator configuration cannot be loaded or validated."""


class ClusterError(OperatorError):
    """Raised when a Kubernetes API call fails permanently."""

    def __init__(self, message: str, *, status: int | None = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.status = status


class TransientClusterError(ClusterError):
    """API server contention, throttling or connectivity loss."""


class ConflictError(TransientClusterError):
    """Optimistic-concurrency conflict (HTTP 409 on update)."""


class AlreadyExistsError(ClusterError):
    """Create of an object that already exists (HTTP 409 on create)."""


class PhaseTransitionError(OperatorError):
    """Raised when a reconciler requests a phase change the state machine forbids."""


class VerificationError(OperatorError):
    """Raised by credential probes when a backend handshake fails."""

    def __init__(self, message: str, *, backend: str, **details: Any) -> None:
        super().__init__(message, backend=backend, **details)
        self.backend = backend


class TemplateError(OperatorError):
    """Raised when a key template references fields missing from the metadata."""


class StorageWriteError(OperatorError):
    """Raised when one or more sink writes for an item fail."""

    def __init__(self, message: str, *, failures: list[tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class QueryError(OperatorError):
    """Raised when the metadata query exits non-zero."""


class FetchError(OperatorError):
    """Raised when fetching the item's video or thumbnail fails."""


class VpnMaskingError(OperatorError):
    """The egress IP did not change after connecting to the VPN."""


class VpnNotReadyError(OperatorError):
    """The readiness file did not appear before the deadline."""


def describe_failure(exc: BaseException) -> str:
    """Render an exception as a one-line status message an operator can act on."""
    text = str(exc).strip() or type(exc).__name__
    if isinstance(exc, OperatorError):
        return text
    return f"{type(exc).__name__}: {text}"
