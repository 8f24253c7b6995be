"""Context-aware retry policies using Tenacity predicates.

Every outbound call the operator makes is one of a few operation types, and
each type has its own retry semantics:

- CLUSTER_API: retry on throttling (429), server errors and
  dropped connections, giving the API server a bounded window to recover
- WEBHOOK: retry only on connection failures; a slow or erroring endpoint is
  logged by the caller and never blocks storage success

Usage:
    from YtdlOperator.errors.tenacity_policies import (
        OperationType,
        create_contextual_retry_policy,
    )

    policy = create_contextual_retry_policy(OperationType.CLUSTER_API)
    for attempt in policy:
        with attempt:
            api.create_namespaced_pod(namespace, body)
"""

from __future__ import annotations

import logging
from enum import Enum, auto

import httpx
import urllib3.exceptions
from kubernetes.client.exceptions import ApiException
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    stop_any,
    wait_exponential_jitter,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class OperationType(Enum):
    """Operation type for contextual retry decisions."""

    CLUSTER_API = auto()  # Kubernetes API server calls
    WEBHOOK = auto()  # Best-effort notifications


def is_transient_api_error(exc: BaseException) -> bool:
    """Return True when a Kubernetes client failure is worth retrying."""
    if isinstance(exc, ApiException):
        return exc.status in _TRANSIENT_STATUSES
    return isinstance(
        exc,
        (
            urllib3.exceptions.ProtocolError,
            urllib3.exceptions.MaxRetryError,
            urllib3.exceptions.TimeoutError,
            ConnectionError,
        ),
    )


def create_contextual_retry_policy(
    operation: OperationType = OperationType.CLUSTER_API,
    max_attempts: int = 5,
    max_delay_seconds: float = 30.0,
) -> Retrying:
    """Create an operation-aware Tenacity retry policy.

    Args:
        operation: Operation type the policy guards.
        max_attempts: Maximum attempts including the first call.
        max_delay_seconds: Total time budget across attempts.

    Returns:
        Configured Tenacity ``Retrying`` object. Exceptions are re-raised once
        the policy gives up.
    """
    if operation is OperationType.CLUSTER_API:
        retry_condition = retry_if_exception(is_transient_api_error)
    else:
        retry_condition = retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout))

    return Retrying(
        stop=stop_any(stop_after_attempt(max_attempts), stop_after_delay(max_delay_seconds)),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        retry=retry_condition,
        before_sleep=before_sleep_log(logger, logging.WARNING, exc_info=False),
        reraise=True,
    )


__all__ = [
    "OperationType",
    "create_contextual_retry_policy",
    "is_transient_api_error",
]
