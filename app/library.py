"""Audio Fetch Pipeline - Library index primitives.

The library index lists completed, playable items. It is separate from the
job ledger: a row exists only for jobs whose bytes the blob store confirmed.

Note:
    Primitives in this module flush but do NOT commit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from app.models import LibraryEntry, utc_now

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def upsert_library_entry(
    session: Session,
    filename: str,
    source_url: str,
    title: str | None,
    duration_sec: float | None,
    content_type: str,
    size_bytes: int | None = None,
    content_hash: str | None = None,
) -> LibraryEntry:
    """Insert or update the library entry for a stored file.

    created_at is only set on first insert; every other column, including
    ready=True, is overwritten on conflict.

    Args:
        session: Active database session.
        filename: Library key (same as the job filename).
        source_url: Original reference.
        title: Extracted title; falls back to filename when empty.
        duration_sec: Extracted duration, if known.
        content_type: MIME type of the stored bytes.
        size_bytes: Stored object size.
        content_hash: SHA256 hex digest of the stored bytes.

    Returns:
        The current LibraryEntry row.
    """
    now = utc_now()
    values = {
        "filename": filename,
        "source_url": source_url,
        "title": title or filename,
        "duration_sec": duration_sec,
        "content_type": content_type,
        "size_bytes": size_bytes,
        "content_hash": content_hash,
        "ready": True,
        "updated_at": now,
    }
    stmt = insert(LibraryEntry).values(created_at=now, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[LibraryEntry.filename],
        set_={key: stmt.excluded[key] for key in values if key != "filename"},
    )
    session.execute(stmt)
    session.flush()

    entry = get_library_entry(session, filename)
    # The core INSERT bypassed the identity map
    session.refresh(entry)
    return entry


def get_library_entry(session: Session, filename: str) -> LibraryEntry | None:
    """Find a library entry by filename."""
    stmt = select(LibraryEntry).where(LibraryEntry.filename == filename)
    return session.execute(stmt).scalar_one_or_none()


def list_library(session: Session) -> list[LibraryEntry]:
    """Return every library entry, newest first.

    No pagination: the library is bounded by operator usage.
    """
    stmt = select(LibraryEntry).order_by(LibraryEntry.created_at.desc(), LibraryEntry.id.desc())
    return list(session.execute(stmt).scalars().all())
