# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Storage",
#   "purpose": "Storage verification, sink writers and the per-item fan-out",
#   "sections": []
# }
# === /NAVMAP ===

"""
YtdlOperator.Storage owns everything between a fetched item and its
destinations:

- ``secrets`` resolves secret references into ``Credentials``.
- ``probes`` builds backend clients and runs the cheap authenticated
  handshakes used for verification.
- ``verification`` memoises those handshakes per backend configuration with
  single-flight semantics; both the storage reconciler and the download worker
  consult it.
- ``template``, ``thumbnails`` and ``sinks`` render keys, convert thumbnails
  and perform idempotent per-backend writes.
- ``planner`` expands storages into a write plan, executes it and notifies
  webhooks once every write succeeded.
"""

from __future__ import annotations

from .planner import (
    ArtifactSet,
    FanoutPlan,
    FanoutResult,
    WriterPool,
    execute_plan,
    fan_out,
    plan_writes,
    verify_backends,
    videos_already_stored,
)
from .secrets import Credentials, SecretResolver, resolve_credentials
from .sinks import Artifact, open_writer
from .template import render_key
from .verification import CredentialVerificationCache, VerifyResult, VerifyState

__all__ = (
    "Artifact",
    "ArtifactSet",
    "Credentials",
    "CredentialVerificationCache",
    "FanoutPlan",
    "FanoutResult",
    "SecretResolver",
    "VerifyResult",
    "VerifyState",
    "WriterPool",
    "execute_plan",
    "fan_out",
    "open_writer",
    "plan_writes",
    "render_key",
    "resolve_credentials",
    "verify_backends",
    "videos_already_stored",
)
