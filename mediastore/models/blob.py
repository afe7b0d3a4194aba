"""Content-addressed blob models.

Foundation primitive:
  BlobRecord = immutable canonical bytes (keyed by their digest) + metadata.

Catalog entities point at a BlobRecord through BlobRef rows; a record with no
BlobRef is an orphan and gets reclaimed by the reconciler.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, CreatedAtMixin, UUIDMixin


class BlobRecord(CreatedAtMixin, Base):
    """Immutable canonical bytes stored once per digest."""

    __tablename__ = "blob"

    # Digest of the canonical bytes stored at storage_key.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    display_name: Mapped[str | None] = mapped_column(String(500), default=None)
    storage_key: Mapped[str] = mapped_column(String(300), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # upload/web (first sighting only; records are never mutated).
    source: Mapped[str | None] = mapped_column(String(20), default=None)
    original_url: Mapped[str | None] = mapped_column(Text, default=None)

    refs: Mapped[list["BlobRef"]] = relationship(back_populates="blob", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<BlobRecord {self.id!r} {self.storage_key!r}>"


class BlobRef(UUIDMixin, CreatedAtMixin, Base):
    """An owner (catalog entity) referencing a blob."""

    __tablename__ = "blob_ref"
    __table_args__ = (
        UniqueConstraint("blob_id", "owner_type", "owner_id", name="uq_blob_ref_blob_owner"),
        Index("ix_blob_ref_owner", "owner_type", "owner_id"),
    )

    blob_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("blob.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_type: Mapped[str] = mapped_column(String(100), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False)

    blob: Mapped[BlobRecord] = relationship(back_populates="refs")

    def __repr__(self) -> str:
        return f"<BlobRef {self.owner_type}:{self.owner_id} -> {self.blob_id}>"
