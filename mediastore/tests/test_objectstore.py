"""Tests for object-store clients, error classification and retries."""

from __future__ import annotations

import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from mediastore.storage.objectstore import (
    MemoryObjectStore,
    ObjectNotFoundError,
    ObjectStore,
    RetryingObjectStore,
    S3ObjectStore,
    TerminalObjectStoreError,
    TransientObjectStoreError,
    classify_error,
)


def _client_error(code: str, status: int, op: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "boom"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_client_error("InternalError", 500), TransientObjectStoreError),
        (_client_error("SlowDown", 503), TransientObjectStoreError),
        (_client_error("AccessDenied", 403), TerminalObjectStoreError),
        (_client_error("NoSuchKey", 404, "GetObject"), ObjectNotFoundError),
        (EndpointConnectionError(endpoint_url="https://s3.test"), TransientObjectStoreError),
        (NoCredentialsError(), TerminalObjectStoreError),
    ],
)
def test_classify_error(exc, expected):
    err = classify_error(exc, key="image/a.webp")
    assert type(err) is expected
    assert err.key == "image/a.webp"


class _StubS3Client:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.errors: dict[str, Exception] = {}
        self.pages: list[dict] = []

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))
        if name in self.errors:
            raise self.errors[name]

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        return {}

    def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        return {"Body": io.BytesIO(b"stored")}

    def delete_object(self, **kwargs):
        self._record("delete_object", kwargs)
        return {}

    def list_objects_v2(self, **kwargs):
        self._record("list_objects_v2", kwargs)
        return self.pages.pop(0)


@pytest.mark.asyncio
async def test_s3_store_put_passes_metadata():
    client = _StubS3Client()
    store = S3ObjectStore(client, "blog-storage")
    await store.put("image/a.webp", b"data", "image/webp", 4)

    name, kwargs = client.calls[0]
    assert name == "put_object"
    assert kwargs == {
        "Bucket": "blog-storage",
        "Key": "image/a.webp",
        "Body": b"data",
        "ContentType": "image/webp",
        "ContentLength": 4,
    }
    assert await store.get("image/a.webp") == b"stored"


@pytest.mark.asyncio
async def test_s3_store_classifies_client_errors():
    client = _StubS3Client()
    client.errors["delete_object"] = _client_error("AccessDenied", 403, "DeleteObject")
    store = S3ObjectStore(client, "blog-storage")
    with pytest.raises(TerminalObjectStoreError):
        await store.delete("image/a.webp")


@pytest.mark.asyncio
async def test_s3_store_lists_all_pages():
    client = _StubS3Client()
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    client.pages = [
        {"Contents": [{"Key": "image/a.webp", "Size": 1, "LastModified": ts}], "IsTruncated": True,
         "NextContinuationToken": "t1"},
        {"Contents": [{"Key": "image/b.webp", "Size": 2, "LastModified": ts}], "IsTruncated": False},
    ]
    store = S3ObjectStore(client, "blog-storage")
    keys = [info.key async for info in store.list_objects("image/")]
    assert keys == ["image/a.webp", "image/b.webp"]
    assert client.calls[1][1]["ContinuationToken"] == "t1"


class _CountingStore(MemoryObjectStore):
    def __init__(self, errors):
        super().__init__()
        self.errors = list(errors)

    async def put(self, key, data, content_type, content_length):
        if self.errors:
            self.put_calls += 1
            raise self.errors.pop(0)
        await super().put(key, data, content_type, content_length)


@pytest.mark.asyncio
async def test_retrying_store_recovers_from_transient_errors():
    inner = _CountingStore([TransientObjectStoreError("503"), TransientObjectStoreError("503")])
    store = RetryingObjectStore(inner, max_attempts=3, min_wait_seconds=0, max_wait_seconds=0)
    await store.put("k", b"x", "image/webp", 1)
    assert inner.put_calls == 3
    assert inner.has("k")


@pytest.mark.asyncio
async def test_retrying_store_gives_up_after_max_attempts():
    inner = _CountingStore([TransientObjectStoreError("503")] * 5)
    store = RetryingObjectStore(inner, max_attempts=3, min_wait_seconds=0, max_wait_seconds=0)
    with pytest.raises(TransientObjectStoreError):
        await store.put("k", b"x", "image/webp", 1)
    assert inner.put_calls == 3


@pytest.mark.asyncio
async def test_retrying_store_does_not_retry_terminal_errors():
    inner = _CountingStore([TerminalObjectStoreError("403")])
    store = RetryingObjectStore(inner, max_attempts=3, min_wait_seconds=0, max_wait_seconds=0)
    with pytest.raises(TerminalObjectStoreError):
        await store.put("k", b"x", "image/webp", 1)
    assert inner.put_calls == 1


@pytest.mark.asyncio
async def test_memory_store_get_missing_key():
    store = MemoryObjectStore()
    with pytest.raises(ObjectNotFoundError):
        await store.get("nope")
    # Deleting a missing key is a no-op.
    await store.delete("nope")


def test_object_store_requires_full_interface():
    class PutOnly(ObjectStore):
        async def put(self, key, data, content_type, content_length):
            return None

    with pytest.raises(TypeError):
        PutOnly()
