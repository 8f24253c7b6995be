# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Storage.probes",
#   "purpose": "Backend client factories and lightweight credential handshakes",
#   "sections": [
#     {
#       "id": "s3-client",
#       "name": "s3_client",
#       "anchor": "function-s3-client",
#       "kind": "function"
#     },
#     {
#       "id": "sql-engine",
#       "name": "sql_engine",
#       "anchor": "function-sql-engine",
#       "kind": "function"
#     },
#     {
#       "id": "mongo-client",
#       "name": "mongo_client",
#       "anchor": "function-mongo-client",
#       "kind": "function"
#     },
#     {
#       "id": "redis-client",
#       "name": "redis_client",
#       "anchor": "function-redis-client",
#       "kind": "function"
#     },
#     {
#       "id": "probe-backend",
#       "name": "probe_backend",
#       "anchor": "function-probe-backend",
#       "kind": "function"
#     },
#     {
#       "id": "probe-webhook",
#       "name": "probe_webhook",
#       "anchor": "function-probe-webhook",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Backend client factories and credential handshakes.

Each backend gets one factory that turns a backend spec plus resolved
``Credentials`` into a client, shared by the handshake here and by the sink
writers. Handshakes are deliberately cheap:

- S3: ``head_bucket`` against the configured bucket
- SQL: ``SELECT 1`` on a fresh connection
- MongoDB: the ``ping`` admin command
- Redis: ``PING``
- Webhook: a ``HEAD`` request; any non-auth, non-server-error response counts

Any failure is raised as ``VerificationError`` with a message fit for
``status.message``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import boto3
import httpx
import pymongo
import pymongo.errors
import redis
import sqlalchemy
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import VerificationError
from ..types.storage import Backend, MongoBackend, RedisBackend, S3Backend, SqlBackend, WebhookSpec
from .secrets import Credentials

__all__ = [
    "s3_client",
    "sql_engine",
    "mongo_client",
    "redis_client",
    "probe_backend",
    "probe_webhook",
]

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_S = 10


def _tls_enabled(creds: Credentials) -> bool:
    return creds.sslmode is not None and creds.sslmode.lower() not in ("disable", "allow", "false")


def s3_client(backend: S3Backend, creds: Credentials) -> Any:
    """Create a boto3 S3 client; missing keys fall back to the default AWS chain."""
    kwargs: Dict[str, Any] = {
        "region_name": backend.region,
        "config": BotoConfig(
            connect_timeout=_PROBE_TIMEOUT_S,
            read_timeout=60,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    }
    if backend.endpoint:
        kwargs["endpoint_url"] = backend.endpoint
    if creds.access_key_id and creds.secret_access_key:
        kwargs["aws_access_key_id"] = creds.access_key_id
        kwargs["aws_secret_access_key"] = creds.secret_access_key
        if creds.session_token:
            kwargs["aws_session_token"] = creds.session_token
    return boto3.client("s3", **kwargs)


def sql_engine(backend: SqlBackend, creds: Credentials) -> Engine:
    query: Dict[str, str] = {}
    if creds.sslmode:
        query["sslmode"] = creds.sslmode
    if creds.sslcert:
        query["sslrootcert"] = creds.sslcert
    url = URL.create(
        drivername=backend.dialect,
        username=creds.username,
        password=creds.password,
        host=creds.host,
        port=creds.port,
        database=creds.database,
        query=query,
    )
    return sqlalchemy.create_engine(url, pool_pre_ping=True)


def mongo_client(backend: MongoBackend, creds: Credentials) -> pymongo.MongoClient:
    kwargs: Dict[str, Any] = {
        "host": creds.host or "localhost",
        "port": creds.port or 27017,
        "serverSelectionTimeoutMS": _PROBE_TIMEOUT_S * 1000,
    }
    if creds.username:
        kwargs["username"] = creds.username
        kwargs["password"] = creds.password
    if _tls_enabled(creds):
        kwargs["tls"] = True
        if creds.sslcert:
            kwargs["tlsCAFile"] = creds.sslcert
    return pymongo.MongoClient(**kwargs)


def _redis_db(database: Optional[str]) -> int:
    if not database:
        return 0
    if not database.isdigit():
        raise ValueError(f"database {database!r} is not a redis db index")
    return int(database)


def redis_client(backend: RedisBackend, creds: Credentials) -> redis.Redis:
    kwargs: Dict[str, Any] = {
        "host": creds.host or "localhost",
        "port": creds.port or 6379,
        "db": _redis_db(creds.database),
        "username": creds.username,
        "password": creds.password,
        "socket_timeout": _PROBE_TIMEOUT_S,
        "socket_connect_timeout": _PROBE_TIMEOUT_S,
    }
    if _tls_enabled(creds):
        kwargs["ssl"] = True
        if creds.sslcert:
            kwargs["ssl_ca_certs"] = creds.sslcert
    return redis.Redis(**kwargs)


def _probe_s3(backend: S3Backend, creds: Credentials) -> None:
    try:
        s3_client(backend, creds).head_bucket(Bucket=backend.bucket)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "unknown")
        raise VerificationError(
            f"s3 bucket {backend.bucket!r}: head_bucket failed ({code})", backend="s3"
        ) from e
    except (BotoCoreError, ValueError) as e:
        raise VerificationError(f"s3 bucket {backend.bucket!r}: {e}", backend="s3") from e


def _probe_sql(backend: SqlBackend, creds: Credentials) -> None:
    try:
        engine = sql_engine(backend, creds)
    except (SQLAlchemyError, ImportError, ValueError) as e:
        raise VerificationError(f"sql ({backend.dialect}): {e}", backend="sql") from e
    try:
        with engine.connect() as conn:
            conn.execute(sqlalchemy.text("SELECT 1"))
    except SQLAlchemyError as e:
        raise VerificationError(
            f"sql ({backend.dialect}) at {creds.host or 'default host'}: {e.__class__.__name__}: {e}",
            backend="sql",
        ) from e
    finally:
        engine.dispose()


def _probe_mongo(backend: MongoBackend, creds: Credentials) -> None:
    try:
        client = mongo_client(backend, creds)
    except (pymongo.errors.PyMongoError, ValueError, TypeError) as e:
        raise VerificationError(f"mongodb client: {e}", backend="mongodb") from e
    try:
        client.admin.command("ping")
    except pymongo.errors.PyMongoError as e:
        raise VerificationError(
            f"mongodb at {creds.host or 'localhost'}: {e}", backend="mongodb"
        ) from e
    finally:
        client.close()


def _probe_redis(backend: RedisBackend, creds: Credentials) -> None:
    try:
        client = redis_client(backend, creds)
    except (redis.RedisError, ValueError) as e:
        raise VerificationError(f"redis client: {e}", backend="redis") from e
    try:
        client.ping()
    except redis.RedisError as e:
        raise VerificationError(f"redis at {creds.host or 'localhost'}: {e}", backend="redis") from e
    finally:
        client.close()


def probe_backend(backend: Backend, creds: Credentials) -> None:
    """Run the handshake for ``backend``.

    Raises:
        VerificationError: If the backend rejects the credentials or is unreachable.
    """
    if isinstance(backend, S3Backend):
        _probe_s3(backend, creds)
    elif isinstance(backend, SqlBackend):
        _probe_sql(backend, creds)
    elif isinstance(backend, MongoBackend):
        _probe_mongo(backend, creds)
    elif isinstance(backend, RedisBackend):
        _probe_redis(backend, creds)
    else:
        raise TypeError(f"unsupported backend {type(backend).__name__}")
    logger.debug(f"Handshake succeeded for {backend.identity()}")


def probe_webhook(
    webhook: WebhookSpec,
    creds: Credentials,
    client: Optional[httpx.Client] = None,
) -> None:
    """Check that ``webhook.url`` answers and accepts the configured credentials."""
    auth = (creds.username or "", creds.password or "") if webhook.basic_auth else None
    owned = client is None
    client = client or httpx.Client(timeout=webhook.timeout_seconds())
    try:
        response = client.request("HEAD", webhook.url, auth=auth, headers=webhook.headers)
    except httpx.HTTPError as e:
        raise VerificationError(f"webhook {webhook.url}: {e}", backend="webhook") from e
    finally:
        if owned:
            client.close()
    if response.status_code in (401, 403) or response.status_code >= 500:
        raise VerificationError(
            f"webhook {webhook.url}: HTTP {response.status_code}", backend="webhook"
        )
