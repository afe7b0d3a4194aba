"""Error taxonomy for the media store.

Every error carries the HTTP status it maps to; the app registers a single
handler that renders ``{"detail": message}`` with that status.
"""

from __future__ import annotations


class MediaStoreError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(MediaStoreError):
    """Rejected input. Raised before any metadata or object-store I/O."""

    status_code = 400


class UnsupportedMediaType(ValidationError):
    status_code = 422


class MalformedContent(ValidationError):
    status_code = 400


class BatchSizeError(ValidationError):
    status_code = 422


class PayloadTooLarge(ValidationError):
    status_code = 413


class FetchError(ValidationError):
    """The remote URL could not be fetched."""

    status_code = 400


class NotFound(MediaStoreError):
    status_code = 404


class DependencyFailure(MediaStoreError):
    """Object-store write or delete failed after retries."""

    status_code = 502


class ObjectStoreUnavailable(DependencyFailure):
    status_code = 502


class ObjectStoreRejected(DependencyFailure):
    status_code = 424


class InternalError(MediaStoreError):
    status_code = 500
