"""Commit coordinator: metadata + object-store writes as one logical operation.

The object store has no transactional API, so every operation here is an
explicit saga over one metadata transaction:

create   dedup lookup -> INSERT (flushed, uncommitted) -> PUT -> COMMIT
         PUT fails     -> ROLLBACK, raise DependencyFailure
         COMMIT fails  -> ROLLBACK, delete the object just written
delete   DELETE refs + row (flushed, uncommitted) -> DELETE object -> COMMIT
         object delete fails -> ROLLBACK (row survives), raise DependencyFailure

Duplicate-key errors mean a concurrent request stored the same content first.
That is a dedup hit, not a failure. The shared object key then belongs to the
winner and must not be compensated away.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    DependencyFailure,
    InternalError,
    NotFound,
    ObjectStoreRejected,
    ObjectStoreUnavailable,
)
from ..models.blob import BlobRecord, BlobRef
from .digest import parse_blob_id
from .index import existing_digests, find_blob
from .objectstore import (
    ObjectNotFoundError,
    ObjectStore,
    ObjectStoreError,
    TransientObjectStoreError,
)
from .staging import StagedUpload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateResult:
    id: str
    created: bool


def dependency_failure(exc: ObjectStoreError, action: str) -> DependencyFailure:
    if isinstance(exc, TransientObjectStoreError):
        return ObjectStoreUnavailable(f"object store unavailable during {action}: {exc}")
    return ObjectStoreRejected(f"object store rejected {action}: {exc}")


def _record_for(staged: StagedUpload) -> BlobRecord:
    return BlobRecord(
        id=staged.digest,
        family=staged.family,
        display_name=staged.display_name,
        storage_key=staged.storage_key,
        content_type=staged.content_type,
        size_bytes=staged.size_bytes,
        source=staged.source,
        original_url=staged.original_url,
    )


async def _discard_objects(store: ObjectStore, keys: list[str]) -> None:
    """Best-effort compensation for objects written by a failed operation."""
    for key in keys:
        try:
            await store.delete(key)
        except ObjectStoreError:
            logger.warning("Compensating delete failed; object left for the stray sweep: %s", key)


async def _resolve_duplicate(db: AsyncSession, staged: StagedUpload) -> CreateResult:
    existing = await find_blob(db, staged.digest)
    if existing is None:
        raise InternalError(f"duplicate key for {staged.digest} but no record found")
    logger.info("Concurrent upload deduplicated: %s", staged.digest)
    return CreateResult(id=existing.id, created=False)


async def create_blob(db: AsyncSession, store: ObjectStore, staged: StagedUpload) -> CreateResult:
    """Store ``staged`` once; repeated content returns the existing id."""
    existing = await find_blob(db, staged.digest)
    if existing is not None:
        return CreateResult(id=existing.id, created=False)

    db.add(_record_for(staged))
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return await _resolve_duplicate(db, staged)
    except SQLAlchemyError as e:
        await db.rollback()
        raise InternalError(f"metadata insert failed: {e}") from e

    try:
        await store.put(staged.storage_key, staged.data, staged.content_type, staged.size_bytes)
    except ObjectStoreError as e:
        await db.rollback()
        logger.warning("Put failed, metadata rolled back: %s (%s)", staged.storage_key, e)
        raise dependency_failure(e, "put") from e

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await _resolve_duplicate(db, staged)
    except SQLAlchemyError as e:
        await db.rollback()
        await _discard_objects(store, [staged.storage_key])
        raise InternalError(f"metadata commit failed: {e}") from e

    logger.info("Object created: %s", staged.digest)
    return CreateResult(id=staged.digest, created=True)


async def create_blobs(
    db: AsyncSession,
    store: ObjectStore,
    items: list[StagedUpload],
    *,
    _retry: bool = True,
) -> list[CreateResult]:
    """All-or-nothing batch create.

    Rows for every new digest are inserted in one transaction, then objects
    are put one by one. Any put failure rolls the transaction back and deletes
    the objects this batch already wrote.
    """
    results: list[CreateResult] = []
    pending: dict[str, StagedUpload] = {}
    for staged in items:
        if staged.digest in pending:
            results.append(CreateResult(id=staged.digest, created=False))
            continue
        existing = await find_blob(db, staged.digest)
        if existing is not None:
            results.append(CreateResult(id=existing.id, created=False))
            continue
        pending[staged.digest] = staged
        results.append(CreateResult(id=staged.digest, created=True))

    if not pending:
        return results

    db.add_all([_record_for(staged) for staged in pending.values()])
    written: list[StagedUpload] = []
    try:
        await db.flush()
        for staged in pending.values():
            await store.put(staged.storage_key, staged.data, staged.content_type, staged.size_bytes)
            written.append(staged)
        await db.commit()
    except ObjectStoreError as e:
        await db.rollback()
        await _discard_objects(store, [s.storage_key for s in written])
        logger.warning("Batch put failed after %d/%d objects; batch rolled back", len(written), len(pending))
        raise dependency_failure(e, "put") from e
    except IntegrityError as e:
        await db.rollback()
        # Keys of digests another request committed belong to that request.
        taken = await existing_digests(db, list(pending))
        await _discard_objects(store, [s.storage_key for s in written if s.digest not in taken])
        if not _retry:
            raise InternalError(f"batch insert conflicted twice: {e}") from e
        logger.info("Batch raced a concurrent upload; retrying with fresh lookups")
        return await create_blobs(db, store, items, _retry=False)
    except SQLAlchemyError as e:
        await db.rollback()
        await _discard_objects(store, [s.storage_key for s in written])
        raise InternalError(f"batch metadata write failed: {e}") from e

    logger.info("Objects created:\n%s", "\n".join(pending))
    return results


async def get_blob(db: AsyncSession, family: str, blob_id: str) -> BlobRecord:
    digest = parse_blob_id(blob_id)
    try:
        record = await find_blob(db, digest)
    except SQLAlchemyError as e:
        raise InternalError(f"metadata lookup failed: {e}") from e
    if record is None or record.family != family:
        raise NotFound(f"blob {blob_id!r} not found")
    return record


async def read_blob(
    db: AsyncSession, store: ObjectStore, family: str, blob_id: str
) -> tuple[BlobRecord, bytes]:
    record = await get_blob(db, family, blob_id)
    try:
        data = await store.get(record.storage_key)
    except ObjectNotFoundError as e:
        raise NotFound(f"blob {record.id!r} has no stored object") from e
    except ObjectStoreError as e:
        raise dependency_failure(e, "get") from e
    return record, data


async def delete_blob(db: AsyncSession, store: ObjectStore, family: str, blob_id: str) -> str:
    """Delete a blob and its owner references.

    The row deletion stays uncommitted while the object is deleted, so an
    object-store failure leaves both sides intact.
    """
    record = await get_blob(db, family, blob_id)
    digest, key = record.id, record.storage_key

    try:
        await db.execute(delete(BlobRef).where(BlobRef.blob_id == digest))
        await db.execute(delete(BlobRecord).where(BlobRecord.id == digest))
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        raise InternalError(f"metadata delete failed: {e}") from e

    try:
        await store.delete(key)
    except ObjectStoreError as e:
        await db.rollback()
        logger.warning("Object delete failed, metadata kept: %s (%s)", key, e)
        raise dependency_failure(e, "delete") from e

    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise InternalError(f"metadata delete commit failed: {e}") from e

    logger.info("Object deleted: %s", digest)
    return digest
