"""Digest helpers: blob identity and storage keys.

The digest of the canonical bytes is the blob's primary key. ``md5`` remains
selectable for deployments whose existing ids were minted with it; it is not
collision resistant, so new deployments should keep the ``sha256`` default.
"""

from __future__ import annotations

import hashlib

from ..errors import NotFound
from .canonical import known_extensions

SUPPORTED_ALGORITHMS = {
    "sha256": 64,
    "md5": 32,
}

_HEX = frozenset("0123456789abcdef")


class DigestError(ValueError):
    pass


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Lowercase hex digest of ``data``."""
    algo = (algorithm or "").strip().lower()
    if algo not in SUPPORTED_ALGORITHMS:
        raise DigestError(f"unsupported digest algorithm: {algorithm!r}")
    return hashlib.new(algo, data or b"").hexdigest()


def storage_key(family_prefix: str, digest: str, extension: str, prefix: str = "") -> str:
    """``<prefix><family>/<digest>.<ext>``; deterministic in the digest."""
    name = f"{digest}.{extension}" if extension else digest
    return f"{prefix}{family_prefix}/{name}"


def display_filename(digest: str, extension: str) -> str:
    return f"{digest}.{extension}" if extension else digest


def digest_from_key(key: str) -> str | None:
    """Recover the digest from a storage key (``image/<digest>.webp``)."""
    name = (key or "").rsplit("/", 1)[-1]
    stem = name.split(".", 1)[0].lower()
    if _is_hex_digest(stem):
        return stem
    return None


def parse_blob_id(value: str) -> str:
    """Validate an id from a URL; a canonical extension suffix is allowed.

    Unparseable ids are reported as not found: they cannot name a blob.
    """
    raw = (value or "").strip().lower()
    stem, dot, ext = raw.partition(".")
    if dot and ext not in known_extensions():
        raise NotFound(f"blob {value!r} not found")
    if not _is_hex_digest(stem):
        raise NotFound(f"blob {value!r} not found")
    return stem


def _is_hex_digest(value: str) -> bool:
    return len(value) in SUPPORTED_ALGORITHMS.values() and all(ch in _HEX for ch in value)
