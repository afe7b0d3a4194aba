"""Orphan reconciliation: reclaim blobs no owner references.

Two sweeps:
  - `sweep_orphans`: blob rows with zero BlobRef rows lose their row and their
    object. Each orphan gets its own session and transaction, so one failure
    does not stop the rest.
  - `sweep_stray_objects`: objects with no blob row (residue of a crash
    between PUT and COMMIT) are deleted once older than a grace period.

`OrphanReconciler` runs both on a schedule as an explicit background task.
`run_once` is single-flight, so sweeps never overlap even if one overruns its
interval or is triggered manually while the loop is sweeping.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.blob import BlobRecord, BlobRef
from .canonical import FAMILIES
from .digest import digest_from_key
from .index import existing_digests
from .objectstore import ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepStats:
    scanned: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    stray_deleted: int = 0
    errors: list[str] = field(default_factory=list)


async def find_orphans(db: AsyncSession, *, limit: int | None = None) -> list[BlobRecord]:
    """Blob rows with no owner reference (left join, ref side NULL)."""
    stmt = (
        select(BlobRecord)
        .outerjoin(BlobRef, BlobRef.blob_id == BlobRecord.id)
        .where(BlobRef.id.is_(None))
        .order_by(BlobRecord.created_at.asc(), BlobRecord.id.asc())
    )
    if limit:
        stmt = stmt.limit(int(limit))
    return list((await db.execute(stmt)).scalars().all())


async def _reclaim_orphan(
    session_factory: async_sessionmaker[AsyncSession],
    store: ObjectStore,
    blob_id: str,
    key: str,
) -> bool:
    """Delete one orphan. Returns False when it gained a reference meanwhile."""
    async with session_factory() as db:
        still_orphan = ~select(BlobRef.id).where(BlobRef.blob_id == blob_id).exists()
        result = await db.execute(
            delete(BlobRecord)
            .where(BlobRecord.id == blob_id, still_orphan)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await db.rollback()
            return False
        try:
            await store.delete(key)
        except ObjectStoreError:
            await db.rollback()
            raise
        await db.commit()
        return True


async def sweep_orphans(
    session_factory: async_sessionmaker[AsyncSession],
    store: ObjectStore,
    *,
    limit: int | None = None,
    stats: SweepStats | None = None,
) -> SweepStats:
    """Best-effort sweep; failures are counted and the sweep continues."""
    stats = stats or SweepStats()
    async with session_factory() as db:
        orphans = [(o.id, o.storage_key) for o in await find_orphans(db, limit=limit)]

    for blob_id, key in orphans:
        stats.scanned += 1
        try:
            if await _reclaim_orphan(session_factory, store, blob_id, key):
                stats.deleted += 1
                logger.info("Orphan reclaimed: %s", blob_id)
            else:
                stats.skipped += 1
        except (ObjectStoreError, SQLAlchemyError) as e:
            stats.failed += 1
            stats.errors.append(f"{blob_id}: {e}")
            logger.warning("Orphan reclaim failed: %s (%s)", blob_id, e)
    return stats


async def sweep_stray_objects(
    session_factory: async_sessionmaker[AsyncSession],
    store: ObjectStore,
    *,
    grace: timedelta,
    key_prefix: str = "",
    stats: SweepStats | None = None,
    batch_size: int = 500,
) -> SweepStats:
    """Delete objects under family prefixes that no blob row accounts for."""
    stats = stats or SweepStats()
    cutoff = _utcnow() - grace

    candidates: list[tuple[str, str]] = []
    for family in FAMILIES.values():
        async for info in store.list_objects(f"{key_prefix}{family.prefix}/"):
            digest = digest_from_key(info.key)
            if digest is None or info.last_modified > cutoff:
                continue
            candidates.append((digest, info.key))

    for start in range(0, len(candidates), batch_size):
        chunk = candidates[start:start + batch_size]
        async with session_factory() as db:
            known = await existing_digests(db, [digest for digest, _ in chunk])
        for digest, key in chunk:
            if digest in known:
                continue
            try:
                await store.delete(key)
            except ObjectStoreError as e:
                stats.failed += 1
                stats.errors.append(f"{key}: {e}")
                logger.warning("Stray object delete failed: %s (%s)", key, e)
                continue
            stats.stray_deleted += 1
            logger.info("Stray object reclaimed: %s", key)
    return stats


def parse_daily_time(value: str | None) -> time | None:
    """``"HH:MM"`` -> time; blank disables the wall-clock schedule."""
    if not value or not value.strip():
        return None
    hours, _, minutes = value.strip().partition(":")
    try:
        return time(hour=int(hours), minute=int(minutes or 0))
    except ValueError as e:
        raise ValueError(f"invalid daily time {value!r}; expected HH:MM") from e


def next_run_after(
    now: datetime,
    *,
    at: time | None = None,
    interval_seconds: int = 86400,
) -> datetime:
    """Next due time: the next ``at`` (UTC) if set, else ``now + interval``."""
    if at is None:
        return now + timedelta(seconds=max(1, int(interval_seconds)))
    candidate = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class OrphanReconciler:
    """Scheduled background sweep with an explicit start/stop lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        *,
        at: time | None = None,
        interval_seconds: int = 86400,
        stray_objects: bool = True,
        stray_grace_seconds: int = 3600,
        key_prefix: str = "",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.at = at
        self.interval_seconds = interval_seconds
        self.sweep_stray = stray_objects
        self.stray_grace = timedelta(seconds=stray_grace_seconds)
        self.key_prefix = key_prefix
        self.last_stats: Optional[SweepStats] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweeping(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="orphan-reconciler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> Optional[SweepStats]:
        """Run one reconciliation pass; None if a pass is already running."""
        if self._lock.locked():
            logger.info("Reconciliation already in progress; skipping")
            return None
        async with self._lock:
            stats = await sweep_orphans(self.session_factory, self.store)
            if self.sweep_stray:
                await sweep_stray_objects(
                    self.session_factory,
                    self.store,
                    grace=self.stray_grace,
                    key_prefix=self.key_prefix,
                    stats=stats,
                )
            self.last_stats = stats
            logger.info(
                "Reconciliation finished: scanned=%d deleted=%d skipped=%d failed=%d stray_deleted=%d",
                stats.scanned,
                stats.deleted,
                stats.skipped,
                stats.failed,
                stats.stray_deleted,
            )
            return stats

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = _utcnow()
            due = next_run_after(now, at=self.at, interval_seconds=self.interval_seconds)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=(due - now).total_seconds())
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover
                logger.exception("Reconciliation loop failed")
