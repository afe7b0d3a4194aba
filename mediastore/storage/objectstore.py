"""Object store clients (S3-compatible remote storage + in-memory).

Notes:
  - `S3ObjectStore` wraps a blocking boto3 client; each call runs in a worker
    thread so the event loop never blocks on network I/O.
  - Errors are classified as transient (network, 5xx, throttling) or terminal
    (everything else). `RetryingObjectStore` retries only the transient class.
  - `MemoryObjectStore` backs tests and local development.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .retry import create_object_store_retry_policy

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    def __init__(self, message: str, *, key: str | None = None):
        super().__init__(message)
        self.key = key


class TransientObjectStoreError(ObjectStoreError):
    """Network failure, 5xx or throttling; safe to retry."""


class TerminalObjectStoreError(ObjectStoreError):
    """4xx-class failure; retrying will not help."""


class ObjectNotFoundError(TerminalObjectStoreError):
    pass


_TRANSIENT_CODES = frozenset({
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "InternalError",
    "ServiceUnavailable",
})
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
_TRANSIENT_BOTOCORE = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def classify_error(exc: Exception, *, key: str | None = None) -> ObjectStoreError:
    """Map a botocore exception onto the transient/terminal split."""
    if isinstance(exc, ObjectStoreError):
        return exc
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {}) or {}
        code = str(error.get("Code", ""))
        status = int((exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode") or 0)
        message = f"{code or status}: {error.get('Message', '') or exc}"
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(message, key=key)
        if status >= 500 or code in _TRANSIENT_CODES:
            return TransientObjectStoreError(message, key=key)
        return TerminalObjectStoreError(message, key=key)
    if isinstance(exc, _TRANSIENT_BOTOCORE):
        return TransientObjectStoreError(str(exc), key=key)
    if isinstance(exc, BotoCoreError):
        return TerminalObjectStoreError(str(exc), key=key)
    return TransientObjectStoreError(f"{type(exc).__name__}: {exc}", key=key)


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: datetime


class ObjectStore(ABC):
    """Durable keyed storage. Implementations must make `delete` idempotent."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str, content_length: int) -> None:
        """Store ``data`` under ``key``, replacing any previous object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the object bytes; missing keys raise ObjectNotFoundError."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the object; a missing key is not an error."""

    @abstractmethod
    def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """Iterate objects whose key starts with ``prefix``."""

    async def aclose(self) -> None:
        return None


class MemoryObjectStore(ObjectStore):
    """In-process object store; counts calls so callers can assert on writes."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str, datetime]] = {}
        self.put_calls = 0
        self.delete_calls = 0

    async def put(self, key: str, data: bytes, content_type: str, content_length: int) -> None:
        self.put_calls += 1
        if content_length != len(data):
            raise TerminalObjectStoreError("content length mismatch", key=key)
        self.objects[key] = (bytes(data), content_type, datetime.now(timezone.utc))

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key][0]
        except KeyError:
            raise ObjectNotFoundError(f"NoSuchKey: {key}", key=key) from None

    async def delete(self, key: str) -> None:
        self.delete_calls += 1
        self.objects.pop(key, None)

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        for key, (data, _, modified) in sorted(self.objects.items()):
            if key.startswith(prefix):
                yield ObjectInfo(key=key, size=len(data), last_modified=modified)

    def has(self, key: str) -> bool:
        return key in self.objects


class S3ObjectStore(ObjectStore):
    """S3-compatible store backed by a boto3 client."""

    def __init__(self, client: Any, bucket: str):
        self.client = client
        self.bucket = bucket

    async def _call(self, key: str | None, fn, /, **kwargs):
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, key=key) from e

    async def put(self, key: str, data: bytes, content_type: str, content_length: int) -> None:
        await self._call(
            key,
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            ContentLength=int(content_length),
        )

    async def get(self, key: str) -> bytes:
        resp = await self._call(key, self.client.get_object, Bucket=self.bucket, Key=key)
        body = resp["Body"]
        try:
            return await asyncio.to_thread(body.read)
        finally:
            body.close()

    async def delete(self, key: str) -> None:
        # S3 reports success for missing keys, which keeps retries idempotent.
        await self._call(key, self.client.delete_object, Bucket=self.bucket, Key=key)

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call(None, self.client.list_objects_v2, **kwargs)
            for item in page.get("Contents", []) or []:
                modified = item.get("LastModified") or datetime.now(timezone.utc)
                if modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
                yield ObjectInfo(key=item["Key"], size=int(item.get("Size") or 0), last_modified=modified)
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")
            if not token:
                break


class RetryingObjectStore(ObjectStore):
    """Retries transient failures of the wrapped store with backoff."""

    def __init__(
        self,
        inner: ObjectStore,
        *,
        max_attempts: int = 4,
        min_wait_seconds: float = 0.5,
        max_wait_seconds: float = 8.0,
    ):
        self.inner = inner
        self.max_attempts = max_attempts
        self.min_wait_seconds = min_wait_seconds
        self.max_wait_seconds = max_wait_seconds

    def _policy(self):
        # A fresh policy per call: AsyncRetrying carries per-run state.
        return create_object_store_retry_policy(
            self.max_attempts,
            self.min_wait_seconds,
            self.max_wait_seconds,
            retry_on=TransientObjectStoreError,
        )

    async def put(self, key: str, data: bytes, content_type: str, content_length: int) -> None:
        async for attempt in self._policy():
            with attempt:
                await self.inner.put(key, data, content_type, content_length)

    async def get(self, key: str) -> bytes:
        async for attempt in self._policy():
            with attempt:
                return await self.inner.get(key)
        raise AssertionError("unreachable")  # pragma: no cover

    async def delete(self, key: str) -> None:
        async for attempt in self._policy():
            with attempt:
                await self.inner.delete(key)

    def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        return self.inner.list_objects(prefix)

    async def aclose(self) -> None:
        await self.inner.aclose()


def build_object_store(settings_obj) -> ObjectStore:
    """Construct the configured store, wrapped with the retry policy."""
    backend = (settings_obj.object_store_backend or "s3").strip().lower()
    if backend == "memory":
        if settings_obj.is_production:
            raise ValueError("the memory object store is not allowed in production")
        inner: ObjectStore = MemoryObjectStore()
    elif backend == "s3":
        import boto3

        client = boto3.client(
            "s3",
            endpoint_url=settings_obj.s3_endpoint_url,
            region_name=settings_obj.s3_region,
            aws_access_key_id=settings_obj.s3_access_key_id,
            aws_secret_access_key=settings_obj.s3_secret_access_key,
        )
        inner = S3ObjectStore(client, settings_obj.s3_bucket)
    else:
        raise ValueError(f"unknown object store backend: {backend!r}")

    logger.info("Object store backend: %s", backend)
    return RetryingObjectStore(
        inner,
        max_attempts=settings_obj.object_store_max_attempts,
        min_wait_seconds=settings_obj.object_store_backoff_min_seconds,
        max_wait_seconds=settings_obj.object_store_backoff_max_seconds,
    )
