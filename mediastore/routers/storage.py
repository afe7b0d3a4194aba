"""Storage routes: upload, fetch-by-URL, read and delete deduplicated blobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Response, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..deps import get_fetcher, get_media_family, get_object_store
from ..errors import BatchSizeError, PayloadTooLarge
from ..schemas.storage import (
    BlobRecordOut,
    BlobRefOut,
    DeleteResponse,
    InsertResponse,
    WebUpload,
    WebUploadMulti,
)
from ..services import reference_svc
from ..storage import coordinator
from ..storage.canonical import MediaFamily
from ..storage.fetch import RemoteFetcher
from ..storage.objectstore import ObjectStore
from ..storage.staging import StagedUpload, stage_upload

router = APIRouter(prefix="/storage/{family}", tags=["storage"])


def _check_batch_size(count: int) -> None:
    if not 1 <= count <= settings.batch_max_items:
        raise BatchSizeError(f"batch must contain 1-{settings.batch_max_items} items (got {count})")


async def _read_upload(file: UploadFile) -> bytes:
    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise PayloadTooLarge(f"{file.filename or 'file'} exceeds {settings.max_upload_bytes} bytes")
    return data


async def _stage_file(family: MediaFamily, file: UploadFile) -> StagedUpload:
    data = await _read_upload(file)
    return await stage_upload(family, data, file.content_type, filename=file.filename)


async def _stage_url(family: MediaFamily, fetcher: RemoteFetcher, url: str) -> StagedUpload:
    fetched = await fetcher.fetch(url, family)
    return await stage_upload(
        family,
        fetched.data,
        fetched.content_type,
        filename=fetched.filename,
        source="web",
        original_url=fetched.url if fetched.url != "data:" else None,
    )


@router.post("/item", response_model=InsertResponse[str])
async def create_item(
    file: UploadFile = File(...),
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    family.check_content_type(file.content_type, file.filename)
    staged = await _stage_file(family, file)
    result = await coordinator.create_blob(db, store, staged)
    return {"id": result.id}


@router.post("/item_multi", response_model=InsertResponse[list[str]])
async def create_items(
    files: list[UploadFile] = File(...),
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    _check_batch_size(len(files))
    for file in files:
        family.check_content_type(file.content_type, file.filename)

    staged = [await _stage_file(family, file) for file in files]
    results = await coordinator.create_blobs(db, store, staged)
    return {"id": [r.id for r in results]}


@router.post("/item_from_web", response_model=InsertResponse[str])
async def create_item_from_web(
    body: WebUpload,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    fetcher: RemoteFetcher = Depends(get_fetcher),
):
    staged = await _stage_url(family, fetcher, body.url)
    result = await coordinator.create_blob(db, store, staged)
    return {"id": result.id}


@router.post("/item_from_web_multi", response_model=InsertResponse[list[str]])
async def create_items_from_web(
    body: WebUploadMulti,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    fetcher: RemoteFetcher = Depends(get_fetcher),
):
    urls = [u.strip() for u in body.urls if isinstance(u, str) and u.strip()]
    _check_batch_size(len(urls))

    staged = [await _stage_url(family, fetcher, url) for url in urls]
    results = await coordinator.create_blobs(db, store, staged)
    return {"id": [r.id for r in results]}


@router.get("/item/{blob_id}", response_model=BlobRecordOut)
async def get_item(
    blob_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
):
    record = await coordinator.get_blob(db, family.name, blob_id)
    out = BlobRecordOut.model_validate(record)
    out.ref_count = await reference_svc.count_references(db, record.id)
    return out


@router.get("/item/{blob_id}/content")
async def get_item_content(
    blob_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    record, data = await coordinator.read_blob(db, store, family.name, blob_id)
    return Response(
        content=data,
        media_type=record.content_type,
        headers={
            "ETag": f'"{record.id}"',
            "Cache-Control": "public, max-age=31536000, immutable",
        },
    )


@router.delete("/item/{blob_id}", response_model=DeleteResponse[str])
async def delete_item(
    blob_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    deleted = await coordinator.delete_blob(db, store, family.name, blob_id)
    return {"id": deleted}


@router.get("/item/{blob_id}/refs", response_model=list[BlobRefOut])
async def list_item_refs(
    blob_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
):
    record = await coordinator.get_blob(db, family.name, blob_id)
    return await reference_svc.list_references(db, record.id)


@router.put("/item/{blob_id}/refs/{owner_type}/{owner_id}", response_model=BlobRefOut)
async def attach_item_ref(
    blob_id: str,
    owner_type: str,
    owner_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
):
    record = await coordinator.get_blob(db, family.name, blob_id)
    ref, _ = await reference_svc.attach_reference(db, record.id, owner_type, owner_id)
    return ref


@router.delete("/item/{blob_id}/refs/{owner_type}/{owner_id}")
async def detach_item_ref(
    blob_id: str,
    owner_type: str,
    owner_id: str,
    family: MediaFamily = Depends(get_media_family),
    db: AsyncSession = Depends(get_db),
):
    record = await coordinator.get_blob(db, family.name, blob_id)
    removed = await reference_svc.detach_reference(db, record.id, owner_type, owner_id)
    return {"id": record.id, "removed": removed}
