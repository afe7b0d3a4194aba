"""Owner reference service (catalog entities pointing at blobs)."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..models.blob import BlobRecord, BlobRef


async def find_reference(
    db: AsyncSession, blob_id: str, owner_type: str, owner_id: str
) -> BlobRef | None:
    stmt = select(BlobRef).where(
        BlobRef.blob_id == blob_id,
        BlobRef.owner_type == owner_type,
        BlobRef.owner_id == owner_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def attach_reference(
    db: AsyncSession, blob_id: str, owner_type: str, owner_id: str
) -> tuple[BlobRef, bool]:
    """Get existing reference or create a new one. Returns (ref, created)."""
    if await db.get(BlobRecord, blob_id) is None:
        raise NotFound(f"blob {blob_id!r} not found")

    ref = await find_reference(db, blob_id, owner_type, owner_id)
    if ref:
        return ref, False
    ref = BlobRef(blob_id=blob_id, owner_type=owner_type, owner_id=owner_id)
    db.add(ref)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent attach of the same owner committed first.
        await db.rollback()
        existing = await find_reference(db, blob_id, owner_type, owner_id)
        if existing is None:
            raise
        return existing, False
    await db.refresh(ref)
    return ref, True


async def detach_reference(db: AsyncSession, blob_id: str, owner_type: str, owner_id: str) -> bool:
    ref = await find_reference(db, blob_id, owner_type, owner_id)
    if not ref:
        return False
    await db.delete(ref)
    await db.commit()
    return True


async def list_references(db: AsyncSession, blob_id: str) -> list[BlobRef]:
    stmt = select(BlobRef).where(BlobRef.blob_id == blob_id).order_by(BlobRef.created_at)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_references(db: AsyncSession, blob_id: str) -> int:
    stmt = select(func.count()).select_from(BlobRef).where(BlobRef.blob_id == blob_id)
    return int((await db.execute(stmt)).scalar_one())
