"""Dedup index: digest -> existing BlobRecord."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.blob import BlobRecord


async def find_blob(db: AsyncSession, digest: str) -> BlobRecord | None:
    """Primary-key lookup; a hit means the content is already stored."""
    return await db.get(BlobRecord, digest)


async def existing_digests(db: AsyncSession, digests: list[str]) -> set[str]:
    if not digests:
        return set()
    stmt = select(BlobRecord.id).where(BlobRecord.id.in_(set(digests)))
    return set((await db.execute(stmt)).scalars().all())
