from __future__ import annotations

import enum
import uuid
from datetime import datetime
from pathlib import PurePosixPath

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from assetflow.db.base import Base

_IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff")
_VIDEO_SUFFIXES = (".mp4", ".webm", ".mov", ".m4v", ".mkv", ".avi")
_DOCUMENT_SUFFIXES = (".pdf", ".txt", ".md", ".csv", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".rtf")
_DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/rtf",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
    "application/vnd.oasis.opendocument.text",
}


class MediaKind(str, enum.Enum):
    image = "image"
    video = "video"
    document = "document"
    other = "other"

    @classmethod
    def from_content_type(cls, content_type: str | None, filename: str | None = None) -> "MediaKind":
        ctype = str(content_type or "").split(";", 1)[0].strip().lower()
        suffix = PurePosixPath(str(filename or "").lower()).suffix
        if ctype.startswith("image/") or (not ctype and suffix in _IMAGE_SUFFIXES):
            return cls.image
        if ctype.startswith("video/") or (not ctype and suffix in _VIDEO_SUFFIXES):
            return cls.video
        if (
            ctype.startswith("text/")
            or ctype in _DOCUMENT_TYPES
            or ctype.startswith("application/vnd.openxmlformats-officedocument.")
            or (not ctype and suffix in _DOCUMENT_SUFFIXES)
        ):
            return cls.document
        return cls.other


class AssetStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    mime_kind: Mapped[MediaKind] = mapped_column(Enum(MediaKind), nullable=False, index=True)
    primary_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    thumbnail_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    derived_metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AssetStatus] = mapped_column(
        Enum(AssetStatus), nullable=False, default=AssetStatus.pending, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    resolutions: Mapped[list["AssetResolution"]] = relationship(
        "AssetResolution",
        back_populates="asset",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AssetResolution.sort_order",
    )


class AssetResolution(Base):
    __tablename__ = "asset_resolutions"
    __table_args__ = (UniqueConstraint("asset_id", "label", name="uq_asset_resolutions_asset_label"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    asset: Mapped[Asset] = relationship("Asset", back_populates="resolutions")
