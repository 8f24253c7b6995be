"""Webhook notifications sent after an item's storage writes succeed.

Each webhook receives the item's metadata JSON (POST by default) with its own
timeout and optional basic auth read from a secret. Failures are logged and
returned to the caller; they never undo storage writes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Mapping, Optional, Sequence

import httpx

from ..errors import OperationType, create_contextual_retry_policy, describe_failure
from ..types.storage import WebhookSpec
from .secrets import Credentials

__all__ = ["notify_webhooks", "send_webhook"]

logger = logging.getLogger(__name__)


def send_webhook(
    webhook: WebhookSpec,
    metadata: Mapping[str, Any],
    creds: Credentials,
    client: httpx.Client,
) -> httpx.Response:
    """Deliver ``metadata`` to one webhook, retrying connection failures.

    Raises:
        httpx.HTTPError: On timeout, connection failure or a non-2xx response.
    """
    auth = (creds.username or "", creds.password or "") if webhook.basic_auth else None
    policy = create_contextual_retry_policy(
        OperationType.WEBHOOK, max_attempts=3, max_delay_seconds=webhook.timeout_seconds() * 3
    )
    for attempt in policy:
        with attempt:
            response = client.request(
                webhook.method.upper(),
                webhook.url,
                json=dict(metadata),
                headers=webhook.headers,
                auth=auth,
                timeout=webhook.timeout_seconds(),
            )
    response.raise_for_status()
    return response


def notify_webhooks(
    webhooks: Sequence[WebhookSpec],
    metadata: Mapping[str, Any],
    load_credentials: Callable[[Optional[str]], Credentials],
    client: Optional[httpx.Client] = None,
) -> List[str]:
    """Send ``metadata`` to every webhook.

    Args:
        webhooks: Webhooks to notify, already deduplicated
        metadata: The item's metadata record
        load_credentials: Resolves a secret name (or None) to credentials
        client: Optional shared HTTP client

    Returns:
        Failure descriptions, one per webhook that could not be notified.
    """
    failures: List[str] = []
    owned = client is None
    client = client or httpx.Client()
    try:
        for webhook in webhooks:
            secret = webhook.basic_auth.secret if webhook.basic_auth else None
            try:
                response = send_webhook(webhook, metadata, load_credentials(secret), client)
            except Exception as e:
                failure = f"{webhook.url}: {describe_failure(e)}"
                logger.warning(f"Webhook notification failed: {failure}")
                failures.append(failure)
            else:
                logger.info(f"Notified webhook {webhook.url} (HTTP {response.status_code})")
    finally:
        if owned:
            client.close()
    return failures
