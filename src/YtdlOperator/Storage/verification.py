# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Storage.verification",
#   "purpose": "Process-wide credential verification cache with TTL and single-flight",
#   "sections": [
#     {
#       "id": "verifystate",
#       "name": "VerifyState",
#       "anchor": "class-verifystate",
#       "kind": "class"
#     },
#     {
#       "id": "verifyresult",
#       "name": "VerifyResult",
#       "anchor": "class-verifyresult",
#       "kind": "class"
#     },
#     {
#       "id": "credentialverificationcache",
#       "name": "CredentialVerificationCache",
#       "anchor": "class-credentialverificationcache",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Credential verification cache.

One ``CredentialVerificationCache`` is created per process and shared by every
reconciler (or by the fan-out step inside a worker pod). It memoises the
outcome of a backend handshake per distinct backend configuration:

    key = (namespace, kind, secret name, host-level fields...)

**Lifecycle of an entry:**

- populated lazily by the first ``verify`` call for its key
- ``verify.skip`` bypasses the cache and the handshake entirely
- without ``verify.interval`` the outcome (success or failure) is kept until
  ``invalidate`` is called, typically because the resource was edited
- with ``verify.interval`` the outcome expires once the interval elapses

**Single-flight:**

A ``KeyedLimiter`` with one slot per key guarantees at most one in-flight
handshake per configuration. Callers that find a handshake in flight either
get ``IN_FLIGHT`` back (``wait=False``, the reconciler then re-queues) or
block until it finishes and reuse its outcome (``wait=True``).

Failed handshakes are cached like successes so a misconfigured backend is
never probed in a tight loop.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from ..errors import VerificationError
from ..Operator.orchestrator.limits import KeyedLimiter
from ..types.common import utcnow
from ..types.storage import Backend, WebhookSpec
from .probes import probe_backend, probe_webhook
from .secrets import Credentials

__all__ = [
    "VerifyState",
    "VerifyResult",
    "CredentialVerificationCache",
    "Target",
    "default_probe",
]

logger = logging.getLogger(__name__)

Target = Union[Backend, WebhookSpec]
CacheKey = Tuple[str, ...]


class VerifyState(str, Enum):
    VERIFIED = "Verified"
    SKIPPED = "Skipped"
    FAILED = "ErrVerifyFailed"
    IN_FLIGHT = "InFlight"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of ``verify``.

    Attributes:
        state: What happened
        message: Human-readable failure reason, when failed
        checked_at: Wall-clock time of the handshake that produced this result
    """

    state: VerifyState
    message: Optional[str] = None
    checked_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.state in (VerifyState.VERIFIED, VerifyState.SKIPPED)


@dataclass
class _CacheEntry:
    result: VerifyResult
    checked_at: float


def default_probe(target: Target, creds: Credentials) -> None:
    if isinstance(target, WebhookSpec):
        probe_webhook(target, creds)
    else:
        probe_backend(target, creds)


class CredentialVerificationCache:
    """Memoised, single-flight credential checks.

    Example:
        >>> cache = CredentialVerificationCache(probe=lambda target, creds: None)
        >>> from YtdlOperator.types.storage import RedisBackend
        >>> cache.verify("default", RedisBackend(secret="redis-creds"), Credentials).state
        <VerifyState.VERIFIED: 'Verified'>
    """

    def __init__(
        self,
        probe: Callable[[Target, Credentials], None] = default_probe,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._probe = probe
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._inflight = KeyedLimiter(default_limit=1)

    @staticmethod
    def key_for(namespace: str, target: Target) -> CacheKey:
        return (namespace, *target.identity())

    def _fresh(self, key: CacheKey, interval: Optional[float]) -> Optional[VerifyResult]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if interval is None or self._clock() - entry.checked_at < interval:
            return entry.result
        return None

    def verify(
        self,
        namespace: str,
        target: Target,
        load_credentials: Callable[[], Credentials],
        *,
        wait: bool = False,
    ) -> VerifyResult:
        """Return the verification outcome for ``target``, probing only when needed.

        Args:
            namespace: Namespace whose secrets back ``target``
            target: Backend or webhook spec carrying a ``verify`` policy
            load_credentials: Called only when a handshake is actually made
            wait: Block on an in-flight handshake for the same key instead of
                returning ``IN_FLIGHT``

        Returns:
            The cached or freshly produced ``VerifyResult``.
        """
        if target.verify.skip:
            return VerifyResult(VerifyState.SKIPPED)

        key = self.key_for(namespace, target)
        interval = target.verify.interval_seconds()
        cached = self._fresh(key, interval)
        if cached is not None:
            return cached

        if not self._inflight.try_acquire(key):
            if not wait:
                return VerifyResult(VerifyState.IN_FLIGHT, "verification already in progress")
            self._inflight.acquire(key)
        try:
            cached = self._fresh(key, interval)
            if cached is not None:
                return cached
            return self._run(key, target, load_credentials)
        finally:
            self._inflight.release(key)

    def _run(
        self, key: CacheKey, target: Target, load_credentials: Callable[[], Credentials]
    ) -> VerifyResult:
        started = self._clock()
        try:
            self._probe(target, load_credentials())
        except VerificationError as e:
            result = VerifyResult(VerifyState.FAILED, e.message, self._wall_clock())
            logger.warning(f"Verification failed for {key[:2]}: {e.message}")
        else:
            result = VerifyResult(VerifyState.VERIFIED, None, self._wall_clock())
            logger.info(f"Verified {key[:2]} in {self._clock() - started:.2f}s")
        with self._lock:
            self._entries[key] = _CacheEntry(result, started)
        return result

    def seconds_until_recheck(self, namespace: str, target: Target) -> Optional[float]:
        """Seconds before ``target`` will be probed again, or None if never."""
        if target.verify.skip:
            return None
        interval = target.verify.interval_seconds()
        if interval is None:
            return None
        with self._lock:
            entry = self._entries.get(self.key_for(namespace, target))
        if entry is None:
            return 0.0
        return max(0.0, interval - (self._clock() - entry.checked_at))

    def invalidate(self, namespace: str, target: Target) -> None:
        with self._lock:
            self._entries.pop(self.key_for(namespace, target), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
