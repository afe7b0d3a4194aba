"""Media store models - re-exports all models and Base.metadata."""

from .base import Base, UUIDMixin, CreatedAtMixin
from .blob import BlobRecord, BlobRef

__all__ = [
    "Base",
    "UUIDMixin",
    "CreatedAtMixin",
    "BlobRecord",
    "BlobRef",
]
