"""FastAPI application factory for the media store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import settings
from .errors import MediaStoreError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .database import async_session_factory, engine
    from .storage.fetch import RemoteFetcher
    from .storage.objectstore import build_object_store
    from .storage.reconciler import OrphanReconciler, parse_daily_time

    # Auto-create tables for SQLite (local dev)
    if "sqlite" in settings.database_url:
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    store = build_object_store(settings)
    fetcher = RemoteFetcher(
        timeout_seconds=settings.fetch_timeout_seconds,
        max_bytes=settings.fetch_max_bytes,
    )
    reconciler = OrphanReconciler(
        async_session_factory,
        store,
        at=parse_daily_time(settings.reconcile_at),
        interval_seconds=settings.reconcile_interval_seconds,
        stray_objects=settings.reconcile_stray_objects,
        stray_grace_seconds=settings.reconcile_stray_grace_seconds,
        key_prefix=settings.key_prefix,
    )
    app.state.object_store = store
    app.state.fetcher = fetcher
    app.state.reconciler = reconciler

    if settings.reconcile_enabled:
        reconciler.start()
        logger.info("Orphan reconciler started")
    yield
    await reconciler.stop()
    await fetcher.aclose()
    await store.aclose()


app = FastAPI(title=settings.app_title, lifespan=lifespan)


@app.exception_handler(MediaStoreError)
async def media_store_error_handler(request: Request, exc: MediaStoreError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Import and register routers
from .routers import health, storage  # noqa: E402

app.include_router(storage.router)
app.include_router(health.router)
