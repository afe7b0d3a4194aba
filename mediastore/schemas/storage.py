"""Storage API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class InsertResponse(BaseModel, Generic[T]):
    id: T


class DeleteResponse(BaseModel, Generic[T]):
    id: T


class WebUpload(BaseModel):
    url: str = Field(min_length=1)


class WebUploadMulti(BaseModel):
    urls: list[str] = Field(default_factory=list)


class BlobRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    family: str
    display_name: str | None = None
    storage_key: str
    content_type: str
    size_bytes: int
    source: str | None = None
    original_url: str | None = None
    created_at: datetime | None = None
    ref_count: int = 0


class BlobRefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    blob_id: str
    owner_type: str
    owner_id: str
    created_at: datetime | None = None
