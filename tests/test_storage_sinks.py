"""Tests for the per-backend sink writers.

Tests cover:
- S3 uploads from disk and memory, and existence checks
- SQL upserts against an in-memory SQLite database
- MongoDB document replacement by ``_id``
- Redis SET and script invocation with extra keys
"""

from __future__ import annotations

import json
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest
import sqlalchemy
from botocore.exceptions import ClientError

from YtdlOperator.Storage.secrets import Credentials
from YtdlOperator.Storage.sinks import Artifact, MongoWriter, RedisWriter, S3Writer, SqlWriter
from YtdlOperator.types.storage import MongoBackend, RedisBackend, S3Backend, SqlBackend

METADATA = {"id": "abc123", "title": "Clip", "uploader": "someone"}


def _metadata_artifact() -> Artifact:
    return Artifact(
        kind="metadata",
        ext="json",
        content_type="application/json",
        data=json.dumps(METADATA).encode(),
        metadata=METADATA,
    )


def test_artifact_payload_from_path(tmp_path) -> None:
    """Test that on-disk artifacts are read lazily."""
    path = tmp_path / "abc123.mp4"
    path.write_bytes(b"video")
    assert Artifact(kind="video", ext="mp4", content_type="video/mp4", path=path).payload() == b"video"
    with pytest.raises(ValueError):
        Artifact(kind="video", ext="mp4", content_type="video/mp4").payload()


def test_s3_upload_file_for_paths(tmp_path) -> None:
    """Test that path artifacts use ``upload_file`` with a content type."""
    client = MagicMock()
    path = tmp_path / "abc123.mp4"
    path.write_bytes(b"video")
    writer = S3Writer(S3Backend(bucket="videos"), Credentials(), client=client)

    location = writer.write(
        "abc123.mp4", Artifact(kind="video", ext="mp4", content_type="video/mp4", path=path)
    )

    assert location == "s3://videos/abc123.mp4"
    client.upload_file.assert_called_once_with(
        str(path), "videos", "abc123.mp4", ExtraArgs={"ContentType": "video/mp4"}
    )


def test_s3_put_object_for_bytes() -> None:
    """Test that in-memory artifacts use ``put_object``."""
    client = MagicMock()
    writer = S3Writer(S3Backend(bucket="meta"), Credentials(), client=client)

    writer.write("abc123.json", _metadata_artifact())

    kwargs = client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "meta"
    assert kwargs["Key"] == "abc123.json"
    assert json.loads(kwargs["Body"]) == METADATA
    assert kwargs["ContentType"] == "application/json"


def test_s3_exists() -> None:
    """Test that 404s mean absent and other client errors propagate."""
    client = MagicMock()
    writer = S3Writer(S3Backend(bucket="videos"), Credentials(), client=client)
    assert writer.exists("present")

    client.head_object.side_effect = ClientError({"Error": {"Code": "404"}}, "HeadObject")
    assert not writer.exists("missing")

    client.head_object.side_effect = ClientError({"Error": {"Code": "403"}}, "HeadObject")
    with pytest.raises(ClientError):
        writer.exists("forbidden")


def test_sql_write_is_an_upsert() -> None:
    """Test that writing a key twice leaves one row with the latest payload."""
    engine = sqlalchemy.create_engine("sqlite://")
    writer = SqlWriter(SqlBackend(secret="pg", table="items"), Credentials(), engine=engine)

    assert not writer.exists("abc123.json")
    writer.write("abc123.json", _metadata_artifact())
    writer.write(
        "abc123.json",
        Artifact(kind="metadata", ext="json", content_type="application/json", data=b"{}"),
    )

    assert writer.exists("abc123.json")
    with engine.connect() as conn:
        rows = conn.execute(sqlalchemy.text("SELECT key, payload FROM items")).all()
    assert [(row[0], bytes(row[1])) for row in rows] == [("abc123.json", b"{}")]
    writer.close()


def test_mongo_replaces_by_id() -> None:
    """Test that metadata becomes the document and binaries go under ``data``."""
    client = MagicMock()
    collection = client["ytdl"]["metadata"]
    writer = MongoWriter(MongoBackend(secret="mongo"), Credentials(), client=client)

    location = writer.write("abc123", _metadata_artifact())
    assert location == "mongodb://ytdl/metadata/abc123"
    selector, document = collection.replace_one.call_args.args
    assert selector == {"_id": "abc123"}
    assert document == {**METADATA, "_id": "abc123"}
    assert collection.replace_one.call_args.kwargs == {"upsert": True}

    writer.write("abc123.jpg", Artifact(kind="thumbnail", ext="jpg", content_type="image/jpeg", data=b"jpg"))
    _, document = collection.replace_one.call_args.args
    assert bytes(document["data"]) == b"jpg"
    assert document["contentType"] == "image/jpeg"


class FakeRedis:
    def __init__(self) -> None:
        self.values: Dict[str, bytes] = {}
        self.script_calls: List[Dict[str, Any]] = []

    def register_script(self, script: str):
        def run(keys, args):
            self.script_calls.append({"script": script, "keys": keys, "args": args})

        return run

    def exists(self, key: str) -> int:
        return int(key in self.values)

    def set(self, key: str, value: bytes) -> None:
        self.values[key] = value

    def close(self) -> None:
        return None


def test_redis_set() -> None:
    """Test that without a script the payload is SET under the key."""
    client = FakeRedis()
    writer = RedisWriter(RedisBackend(secret="redis"), Credentials(), client=client)

    writer.write("abc123.json", _metadata_artifact())

    assert writer.exists("abc123.json")
    assert json.loads(client.values["abc123.json"]) == METADATA


def test_redis_script_with_extra_keys() -> None:
    """Test that scripts get rendered extra keys and the metadata JSON."""
    client = FakeRedis()
    backend = RedisBackend(
        secret="redis",
        script="return redis.call('SET', KEYS[1], ARGV[1])",
        extraKeys=["by-uploader/%(uploader)s"],
    )
    writer = RedisWriter(backend, Credentials(), client=client)

    writer.write("abc123.json", _metadata_artifact())

    (call,) = client.script_calls
    assert call["keys"] == ["abc123.json", "by-uploader/someone"]
    assert json.loads(call["args"][1]) == METADATA
    assert client.values == {}
