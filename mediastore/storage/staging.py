"""Staged uploads: canonical bytes + identity, ready for the coordinator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..config import settings
from ..errors import InternalError, PayloadTooLarge
from .canonical import MediaFamily, canonicalize, get_family
from .digest import DigestError, compute_digest, display_filename, storage_key


@dataclass(frozen=True)
class StagedUpload:
    """In-memory only; lives for one request or batch item."""

    family: str
    digest: str
    data: bytes
    content_type: str
    extension: str
    storage_key: str
    display_name: str
    source: str = "upload"
    original_url: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def stage_bytes(
    family: str | MediaFamily,
    data: bytes,
    content_type: str | None,
    *,
    filename: str | None = None,
    source: str = "upload",
    original_url: str | None = None,
    algorithm: str | None = None,
    key_prefix: str | None = None,
) -> StagedUpload:
    """Canonicalize and hash ``data`` (CPU-bound, no I/O)."""
    fam = family if isinstance(family, MediaFamily) else get_family(family)
    if len(data or b"") > settings.max_upload_bytes:
        raise PayloadTooLarge(f"payload exceeds {settings.max_upload_bytes} bytes")

    canonical = canonicalize(fam, data, content_type, filename)
    try:
        digest = compute_digest(canonical.data, algorithm or settings.digest_algorithm)
    except DigestError as e:
        raise InternalError(str(e)) from e

    prefix = settings.key_prefix if key_prefix is None else key_prefix
    name = (filename or "").strip() or display_filename(digest, canonical.extension)
    return StagedUpload(
        family=fam.name,
        digest=digest,
        data=canonical.data,
        content_type=canonical.content_type,
        extension=canonical.extension,
        storage_key=storage_key(fam.prefix, digest, canonical.extension, prefix),
        display_name=name[:500],
        source=source,
        original_url=original_url,
    )


async def stage_upload(
    family: str | MediaFamily,
    data: bytes,
    content_type: str | None,
    **kwargs,
) -> StagedUpload:
    """Async wrapper: decoding and encoding run off the event loop."""
    return await asyncio.to_thread(stage_bytes, family, data, content_type, **kwargs)
