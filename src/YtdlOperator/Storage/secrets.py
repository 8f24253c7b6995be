"""Secret references resolved into backend credentials.

Secrets are owned by the cluster administrator; the operator only reads them.
Every field is optional: a missing field means the backend's default applies
(for S3, the ambient AWS credential chain).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Mapping, Optional

from ..errors import VerificationError

__all__ = ["Credentials", "SecretResolver", "resolve_credentials"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Backend connection fields read from a Kubernetes secret."""

    username: Optional[str] = None
    password: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    sslmode: Optional[str] = None
    sslcert: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None

    @classmethod
    def from_secret_data(cls, data: Mapping[str, str]) -> "Credentials":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known and value != ""}
        if "security_token" in data and "session_token" not in values:
            values["session_token"] = data["security_token"]
        if "port" in values:
            try:
                values["port"] = int(values["port"])
            except ValueError:
                raise ValueError(f"secret field 'port' is not an integer: {values['port']!r}") from None
        return cls(**values)

    def __repr__(self) -> str:
        shown = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name in ("username", "host", "port", "database", "sslmode")
            and getattr(self, f.name) is not None
        }
        return f"Credentials({shown})"


class SecretResolver:
    """Reads secrets for one namespace through a ``Cluster``.

    Results are memoised for the lifetime of the resolver, which is one
    reconcile pass or one worker pod run.
    """

    def __init__(self, cluster, namespace: str) -> None:
        self.cluster = cluster
        self.namespace = namespace
        self._cache: dict[str, Credentials] = {}

    def resolve(self, secret_name: Optional[str], *, backend: str = "") -> Credentials:
        if not secret_name:
            return Credentials()
        if secret_name not in self._cache:
            self._cache[secret_name] = resolve_credentials(
                self.cluster, self.namespace, secret_name, backend=backend
            )
        return self._cache[secret_name]


def resolve_credentials(cluster, namespace: str, secret_name: str, *, backend: str = "") -> Credentials:
    """Read ``secret_name`` and map its fields onto ``Credentials``.

    Raises:
        VerificationError: If the secret does not exist or has malformed fields.
    """
    data = cluster.read_secret(namespace, secret_name)
    if data is None:
        raise VerificationError(
            f"secret {namespace}/{secret_name} not found", backend=backend or "secret"
        )
    try:
        return Credentials.from_secret_data(data)
    except ValueError as e:
        raise VerificationError(
            f"secret {namespace}/{secret_name}: {e}", backend=backend or "secret"
        ) from e
