# models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from Contentporter.db import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntryStatus(str, enum.Enum):
    draft = "draft"
    published = "published"


class Entry(Base):
    """One physical row of a logical document: (document_id, locale, status)."""

    __tablename__ = "entries"
    __table_args__ = (
        UniqueConstraint(
            "content_type", "document_id", "locale", "status", name="ux_entries_doc_locale_status"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_type: Mapped[str] = mapped_column(String(128), index=True)
    document_id: Mapped[str] = mapped_column(String(64), index=True)
    # Empty string for non-localized content types so the unique key stays usable
    locale: Mapped[str] = mapped_column(String(16), default="")
    status: Mapped[EntryStatus] = mapped_column(
        SAEnum(EntryStatus, name="entry_status"), default=EntryStatus.draft
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


Index("ix_entries_type_status_locale", Entry.content_type, Entry.status, Entry.locale)


class MediaFile(Base):
    __tablename__ = "media_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hash: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(String(255))
    ext: Mapped[str | None] = mapped_column(String(32), nullable=True)
    mime: Mapped[str] = mapped_column(String(128))
    url: Mapped[str] = mapped_column(String(1024))
    size: Mapped[float | None] = mapped_column(nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    alternative_text: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    caption: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    provider: Mapped[str] = mapped_column(String(64), default="local")
    formats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class CoreStoreValue(Base):
    """Opaque key/value blobs (admin view layouts and similar)."""

    __tablename__ = "core_store"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), unique=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


class Locale(Base):
    __tablename__ = "locales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(16), unique=True)
    name: Mapped[str] = mapped_column(String(120))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
