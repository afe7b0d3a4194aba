"""Tests for orphan reconciliation and its scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest
from sqlalchemy import select

from mediastore.models.blob import BlobRecord
from mediastore.services import reference_svc
from mediastore.storage import coordinator
from mediastore.storage.objectstore import TerminalObjectStoreError
from mediastore.storage.reconciler import (
    OrphanReconciler,
    _reclaim_orphan,
    find_orphans,
    next_run_after,
    parse_daily_time,
    sweep_orphans,
    sweep_stray_objects,
)
from mediastore.storage.staging import stage_bytes


async def _create(session_factory, store, make_image, color):
    staged = stage_bytes("image", make_image("PNG", color=color), "image/png")
    async with session_factory() as db:
        await coordinator.create_blob(db, store, staged)
    return staged


async def _blob_ids(session_factory) -> set[str]:
    async with session_factory() as db:
        return set((await db.execute(select(BlobRecord.id))).scalars().all())


@pytest.mark.asyncio
async def test_sweep_removes_only_unreferenced_blobs(session_factory, store, memory_store, make_image):
    a = await _create(session_factory, store, make_image, (10, 0, 0))
    b = await _create(session_factory, store, make_image, (20, 0, 0))
    async with session_factory() as db:
        await reference_svc.attach_reference(db, a.digest, "image_item", "1")

    stats = await sweep_orphans(session_factory, store)

    assert stats.scanned == 1
    assert stats.deleted == 1
    assert await _blob_ids(session_factory) == {a.digest}
    assert memory_store.has(a.storage_key)
    assert not memory_store.has(b.storage_key)


@pytest.mark.asyncio
async def test_find_orphans_uses_reference_presence(session_factory, store, make_image):
    a = await _create(session_factory, store, make_image, (10, 0, 0))
    b = await _create(session_factory, store, make_image, (20, 0, 0))
    async with session_factory() as db:
        await reference_svc.attach_reference(db, a.digest, "novel", "7")
        await reference_svc.attach_reference(db, a.digest, "novel", "8")
        orphans = await find_orphans(db)
    assert [o.id for o in orphans] == [b.digest]


@pytest.mark.asyncio
async def test_orphan_referenced_after_listing_is_skipped(session_factory, store, memory_store, make_image):
    a = await _create(session_factory, store, make_image, (10, 0, 0))
    async with session_factory() as db:
        [orphan] = await find_orphans(db)
        await reference_svc.attach_reference(db, a.digest, "image_item", "late")

    assert await _reclaim_orphan(session_factory, store, orphan.id, orphan.storage_key) is False
    assert await _blob_ids(session_factory) == {a.digest}
    assert memory_store.has(a.storage_key)


@pytest.mark.asyncio
async def test_sweep_continues_past_failures(session_factory, store, memory_store, make_image):
    a = await _create(session_factory, store, make_image, (10, 0, 0))
    b = await _create(session_factory, store, make_image, (20, 0, 0))
    memory_store.delete_errors[a.storage_key] = TerminalObjectStoreError("403 AccessDenied")

    stats = await sweep_orphans(session_factory, store)

    assert stats.deleted == 1
    assert stats.failed == 1
    assert a.digest in stats.errors[0]
    # The failed orphan keeps its row and object; the other one is gone.
    assert await _blob_ids(session_factory) == {a.digest}
    assert memory_store.has(a.storage_key)
    assert not memory_store.has(b.storage_key)


@pytest.mark.asyncio
async def test_stray_objects_are_reclaimed(session_factory, store, memory_store, make_image):
    kept = await _create(session_factory, store, make_image, (10, 0, 0))
    stray_key = f"image/{'b' * 64}.webp"
    await memory_store.put(stray_key, b"residue", "image/webp", 7)
    await memory_store.put("image/not-a-digest.txt", b"x", "text/plain", 1)

    stats = await sweep_stray_objects(session_factory, store, grace=timedelta(0))

    assert stats.stray_deleted == 1
    assert not memory_store.has(stray_key)
    assert memory_store.has(kept.storage_key)
    assert memory_store.has("image/not-a-digest.txt")


@pytest.mark.asyncio
async def test_stray_objects_within_grace_are_kept(session_factory, store, memory_store):
    stray_key = f"image/{'c' * 64}.webp"
    await memory_store.put(stray_key, b"in-flight", "image/webp", 9)

    stats = await sweep_stray_objects(session_factory, store, grace=timedelta(hours=1))

    assert stats.stray_deleted == 0
    assert memory_store.has(stray_key)


class _SlowDeleteStore:
    """Wraps a store so deletes block until released."""

    def __init__(self, inner):
        self.inner = inner
        self.release = asyncio.Event()
        self.entered = asyncio.Event()

    async def delete(self, key):
        self.entered.set()
        await self.release.wait()
        await self.inner.delete(key)

    def list_objects(self, prefix=""):
        return self.inner.list_objects(prefix)


@pytest.mark.asyncio
async def test_run_once_is_single_flight(session_factory, store, make_image):
    await _create(session_factory, store, make_image, (10, 0, 0))
    slow = _SlowDeleteStore(store)
    reconciler = OrphanReconciler(session_factory, slow, stray_objects=False)

    first = asyncio.create_task(reconciler.run_once())
    await slow.entered.wait()
    assert reconciler.sweeping

    assert await reconciler.run_once() is None

    slow.release.set()
    stats = await first
    assert stats is not None
    assert stats.deleted == 1
    assert reconciler.last_stats is stats
    assert not reconciler.sweeping


@pytest.mark.asyncio
async def test_reconciler_loop_runs_on_interval(session_factory, store, memory_store, make_image):
    staged = await _create(session_factory, store, make_image, (10, 0, 0))
    reconciler = OrphanReconciler(session_factory, store, interval_seconds=1, stray_objects=False)

    reconciler.start()
    assert reconciler.running
    try:
        for _ in range(100):
            if reconciler.last_stats is not None:
                break
            await asyncio.sleep(0.05)
    finally:
        await reconciler.stop()

    assert not reconciler.running
    assert reconciler.last_stats is not None
    assert not memory_store.has(staged.storage_key)


def test_next_run_after_daily_time():
    now = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert next_run_after(now, at=time(0, 0)) == datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    assert next_run_after(now, at=time(13, 0)) == datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)
    assert next_run_after(now, interval_seconds=60) == now + timedelta(seconds=60)


def test_parse_daily_time():
    assert parse_daily_time("00:00") == time(0, 0)
    assert parse_daily_time("  ") is None
    with pytest.raises(ValueError):
        parse_daily_time("25:99")
