"""Async test fixtures for media store tests using SQLite + in-memory objects."""

from __future__ import annotations

import io

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mediastore.database import get_db
from mediastore.deps import get_fetcher, get_object_store
from mediastore.models.base import Base
from mediastore.storage.fetch import RemoteFetcher
from mediastore.storage.objectstore import MemoryObjectStore, RetryingObjectStore


class FaultyObjectStore(MemoryObjectStore):
    """Memory store with injectable failures.

    put_errors maps the 1-based put call number to the error it raises;
    fail_every_put raises on every call; delete_errors maps keys to errors.
    """

    def __init__(self) -> None:
        super().__init__()
        self.put_errors: dict[int, Exception] = {}
        self.fail_every_put: Exception | None = None
        self.delete_errors: dict[str, Exception] = {}

    async def put(self, key, data, content_type, content_length):
        err = self.fail_every_put or self.put_errors.get(self.put_calls + 1)
        if err is not None:
            self.put_calls += 1
            raise err
        await super().put(key, data, content_type, content_length)

    async def delete(self, key):
        if key in self.delete_errors:
            self.delete_calls += 1
            raise self.delete_errors[key]
        await super().delete(key)


def image_bytes(
    fmt: str = "PNG",
    *,
    mode: str = "RGB",
    size: tuple[int, int] = (8, 6),
    color=(200, 30, 30),
) -> bytes:
    """Small deterministic test image with a couple of distinct pixels."""
    im = Image.new(mode, size, color)
    accent = (10, 220, 40, 255)[: len(mode)] if mode in ("RGB", "RGBA") else 0
    im.putpixel((0, 0), accent)
    im.putpixel((size[0] - 1, size[1] - 1), accent)
    buf = io.BytesIO()
    im.save(buf, format=fmt)
    return buf.getvalue()


PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_image():
    return image_bytes


@pytest.fixture
def pdf_bytes() -> bytes:
    return PDF_BYTES


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def memory_store() -> FaultyObjectStore:
    return FaultyObjectStore()


@pytest.fixture
def store(memory_store: FaultyObjectStore) -> RetryingObjectStore:
    return RetryingObjectStore(memory_store, max_attempts=3, min_wait_seconds=0, max_wait_seconds=0)


@pytest.fixture
def web_routes() -> dict[str, tuple[int, dict[str, str], bytes]]:
    """url -> (status, headers, body) served by the mock transport."""
    return {}


@pytest.fixture
def web_requests() -> list[tuple[str, str]]:
    return []


@pytest_asyncio.fixture
async def fetcher(web_routes, web_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        web_requests.append((request.method, str(request.url)))
        entry = web_routes.get(str(request.url))
        if entry is None:
            return httpx.Response(404)
        status, headers, body = entry
        if request.method == "HEAD":
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, headers=headers, content=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    f = RemoteFetcher(client=client, max_bytes=1024 * 1024)
    yield f
    await client.aclose()


@pytest_asyncio.fixture
async def client(session_factory, store, fetcher):
    """HTTPX async test client against the media store app."""
    from mediastore.app import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_object_store] = lambda: store
    app.dependency_overrides[get_fetcher] = lambda: fetcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
