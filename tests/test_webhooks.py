"""Tests for webhook notifications.

Tests cover:
- Method, headers and JSON body
- Basic auth from resolved credentials
- Failures reported per webhook without stopping the rest
"""

from __future__ import annotations

import base64
import json
from typing import List

import httpx

from YtdlOperator.Storage.secrets import Credentials
from YtdlOperator.Storage.webhooks import notify_webhooks
from YtdlOperator.types.storage import WebhookSpec

METADATA = {"id": "abc123", "title": "Clip"}


def _client(requests: List[httpx.Request], status: int = 200) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_sends_metadata_json() -> None:
    """Test that the webhook receives the metadata with configured method and headers."""
    requests: List[httpx.Request] = []
    hook = WebhookSpec(url="https://hooks.example/new", method="put", headers={"X-Source": "ytdl"})

    with _client(requests) as client:
        failures = notify_webhooks([hook], METADATA, lambda secret: Credentials(), client)

    assert failures == []
    (request,) = requests
    assert request.method == "PUT"
    assert request.headers["X-Source"] == "ytdl"
    assert json.loads(request.content) == METADATA


def test_basic_auth_from_secret() -> None:
    """Test that basic auth credentials come from the named secret."""
    requests: List[httpx.Request] = []
    seen: List[object] = []
    hook = WebhookSpec(url="https://hooks.example/new", basicAuth={"secret": "hook-creds"})

    def load(secret):
        seen.append(secret)
        return Credentials(username="bot", password="hunter2")

    with _client(requests) as client:
        notify_webhooks([hook], METADATA, load, client)

    assert seen == ["hook-creds"]
    expected = base64.b64encode(b"bot:hunter2").decode()
    assert requests[0].headers["Authorization"] == f"Basic {expected}"


def test_failures_are_collected() -> None:
    """Test that a failing webhook is reported and later webhooks still run."""
    requests: List[httpx.Request] = []
    hooks = [WebhookSpec(url="https://hooks.example/a"), WebhookSpec(url="https://hooks.example/b")]

    with _client(requests, status=500) as client:
        failures = notify_webhooks(hooks, METADATA, lambda secret: Credentials(), client)

    assert len(requests) == 2
    assert len(failures) == 2
    assert failures[0].startswith("https://hooks.example/a: HTTPStatusError")
