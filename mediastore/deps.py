"""FastAPI dependencies for app-scoped resources."""

from __future__ import annotations

from fastapi import Path, Request

from .storage.canonical import MediaFamily, get_family
from .storage.fetch import RemoteFetcher
from .storage.objectstore import ObjectStore


def get_media_family(family: str = Path(...)) -> MediaFamily:
    """Resolve the ``{family}`` path segment (unknown families are 404)."""
    return get_family(family)


def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


def get_fetcher(request: Request) -> RemoteFetcher:
    return request.app.state.fetcher
