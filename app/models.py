"""Audio Fetch Pipeline - SQLAlchemy ORM models.

Database tables:
1. conversion_jobs (job ledger, one row per conversion attempt)
2. library_entries (library index, one row per durably stored item)
"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class ConversionJob(Base):
    """One conversion attempt and its current phase.

    Rows are never deleted; failed jobs stay visible for auditing.
    """

    __tablename__ = "conversion_jobs"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Generated at creation time; also the library key and blob key
    filename: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)

    # Reference supplied by the requester
    source_url: Mapped[str] = mapped_column(Text, nullable=False)

    # starting | downloaded | uploaded | failed
    phase: Mapped[str] = mapped_column(String(16), nullable=False, default="starting", index=True)

    # Set only when phase == failed
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class LibraryEntry(Base):
    """A durably stored, playable item.

    Written only once the blob store has confirmed the upload.
    """

    __tablename__ = "library_entries"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Same identifier as the originating job
    filename: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)

    source_url: Mapped[str] = mapped_column(Text, nullable=False)

    # Falls back to filename when metadata extraction failed
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    duration_sec: Mapped[float | None] = mapped_column(nullable=True)
    content_type: Mapped[str] = mapped_column(String(64), nullable=False)

    # As reported by the blob store at upload confirmation
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
