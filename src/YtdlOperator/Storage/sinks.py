# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Storage.sinks",
#   "purpose": "Idempotent per-backend writers for video, thumbnail and metadata artifacts",
#   "sections": [
#     {
#       "id": "artifact",
#       "name": "Artifact",
#       "anchor": "class-artifact",
#       "kind": "class"
#     },
#     {
#       "id": "s3writer",
#       "name": "S3Writer",
#       "anchor": "class-s3writer",
#       "kind": "class"
#     },
#     {
#       "id": "sqlwriter",
#       "name": "SqlWriter",
#       "anchor": "class-sqlwriter",
#       "kind": "class"
#     },
#     {
#       "id": "mongowriter",
#       "name": "MongoWriter",
#       "anchor": "class-mongowriter",
#       "kind": "class"
#     },
#     {
#       "id": "rediswriter",
#       "name": "RedisWriter",
#       "anchor": "class-rediswriter",
#       "kind": "class"
#     },
#     {
#       "id": "open-writer",
#       "name": "open_writer",
#       "anchor": "function-open-writer",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Sink writers.

Delivery is at-least-once, so every writer is an upsert by key: writing the
same artifact twice under the same key leaves one copy.

- **S3**: ``upload_file`` for on-disk artifacts, ``put_object`` otherwise
- **SQL**: one row per key in a ``(key, content_type, payload, record)``
  table, replaced inside a transaction
- **MongoDB**: one document per key (``_id``); metadata records are stored as
  documents, binary artifacts under ``data``
- **Redis**: ``SET key payload``, or the configured Lua script with
  ``KEYS = [key, *extraKeys]`` and ``ARGV = [payload, metadata JSON]``
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

import sqlalchemy
from botocore.exceptions import ClientError
from bson.binary import Binary

from ..types.storage import Backend, MongoBackend, RedisBackend, S3Backend, SqlBackend
from .probes import mongo_client, redis_client, s3_client, sql_engine
from .secrets import Credentials
from .template import render_key

__all__ = [
    "Artifact",
    "SinkWriter",
    "S3Writer",
    "SqlWriter",
    "MongoWriter",
    "RedisWriter",
    "open_writer",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """One thing to store for an item: its video, a thumbnail or its metadata.

    Exactly one of ``data`` and ``path`` is set.
    """

    kind: str
    ext: str
    content_type: str
    data: Optional[bytes] = None
    path: Optional[Path] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def payload(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ValueError(f"{self.kind} artifact has neither data nor path")
        return self.path.read_bytes()


class SinkWriter(Protocol):
    def exists(self, key: str) -> bool: ...

    def write(self, key: str, artifact: Artifact) -> str: ...

    def close(self) -> None: ...


class S3Writer:
    def __init__(self, backend: S3Backend, creds: Credentials, client: Any = None) -> None:
        self.backend = backend
        self._client = client or s3_client(backend, creds)

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.backend.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def write(self, key: str, artifact: Artifact) -> str:
        extra = {"ContentType": artifact.content_type}
        if artifact.path is not None:
            self._client.upload_file(str(artifact.path), self.backend.bucket, key, ExtraArgs=extra)
        else:
            self._client.put_object(
                Bucket=self.backend.bucket, Key=key, Body=artifact.payload(), **extra
            )
        return f"s3://{self.backend.bucket}/{key}"

    def close(self) -> None:
        return None


_SQL_TABLES: Dict[str, sqlalchemy.Table] = {}
_SQL_TABLES_LOCK = threading.Lock()


def _sql_table(name: str) -> sqlalchemy.Table:
    with _SQL_TABLES_LOCK:
        if name not in _SQL_TABLES:
            _SQL_TABLES[name] = sqlalchemy.Table(
                name,
                sqlalchemy.MetaData(),
                sqlalchemy.Column("key", sqlalchemy.String(1024), primary_key=True),
                sqlalchemy.Column("content_type", sqlalchemy.String(255), nullable=False),
                sqlalchemy.Column("payload", sqlalchemy.LargeBinary, nullable=False),
                sqlalchemy.Column("record", sqlalchemy.Text, nullable=True),
            )
        return _SQL_TABLES[name]


class SqlWriter:
    def __init__(self, backend: SqlBackend, creds: Credentials, engine: Any = None) -> None:
        self.backend = backend
        self._engine = engine or sql_engine(backend, creds)
        self._table = _sql_table(backend.table)
        self._table.metadata.create_all(self._engine, tables=[self._table])

    def exists(self, key: str) -> bool:
        with self._engine.connect() as conn:
            row = conn.execute(
                sqlalchemy.select(self._table.c.key).where(self._table.c.key == key)
            ).first()
        return row is not None

    def write(self, key: str, artifact: Artifact) -> str:
        row = {
            "key": key,
            "content_type": artifact.content_type,
            "payload": artifact.payload(),
            "record": json.dumps(dict(artifact.metadata)),
        }
        with self._engine.begin() as conn:
            conn.execute(sqlalchemy.delete(self._table).where(self._table.c.key == key))
            conn.execute(sqlalchemy.insert(self._table).values(**row))
        return f"sql://{self.backend.table}/{key}"

    def close(self) -> None:
        self._engine.dispose()


class MongoWriter:
    def __init__(self, backend: MongoBackend, creds: Credentials, client: Any = None) -> None:
        self.backend = backend
        self._client = client or mongo_client(backend, creds)
        self._collection = self._client[backend.database][backend.collection]

    def exists(self, key: str) -> bool:
        return self._collection.count_documents({"_id": key}, limit=1) > 0

    def write(self, key: str, artifact: Artifact) -> str:
        if artifact.kind == "metadata":
            document = dict(artifact.metadata)
        else:
            document = {"data": Binary(artifact.payload()), "contentType": artifact.content_type}
        document["_id"] = key
        self._collection.replace_one({"_id": key}, document, upsert=True)
        return f"mongodb://{self.backend.database}/{self.backend.collection}/{key}"

    def close(self) -> None:
        self._client.close()


class RedisWriter:
    def __init__(self, backend: RedisBackend, creds: Credentials, client: Any = None) -> None:
        self.backend = backend
        self._client = client or redis_client(backend, creds)
        self._script = self._client.register_script(backend.script) if backend.script else None

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def write(self, key: str, artifact: Artifact) -> str:
        payload = artifact.payload()
        if self._script is None:
            self._client.set(key, payload)
        else:
            keys: List[str] = [key]
            keys.extend(render_key(extra, artifact.metadata, artifact.ext) for extra in self.backend.extra_keys)
            self._script(keys=keys, args=[payload, json.dumps(dict(artifact.metadata))])
        return f"redis://{key}"

    def close(self) -> None:
        self._client.close()


def open_writer(backend: Backend, creds: Credentials) -> SinkWriter:
    """Create the writer for ``backend``."""
    if isinstance(backend, S3Backend):
        return S3Writer(backend, creds)
    if isinstance(backend, SqlBackend):
        return SqlWriter(backend, creds)
    if isinstance(backend, MongoBackend):
        return MongoWriter(backend, creds)
    if isinstance(backend, RedisBackend):
        return RedisWriter(backend, creds)
    raise TypeError(f"unsupported backend {type(backend).__name__}")
