"""Audio Fetch Pipeline - Retrieval resolver.

Decides where a job's bytes are served from:

    phase uploaded (or no job but a ready library entry) -> PERMANENT (blob store)
    phase downloaded                                     -> TEMPORARY (data/tmp)
    anything else                                        -> not found

File handles are opened before a ByteStream is returned, so a stream that
started from transient storage still completes after the orchestrator
removes the transient file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from app.blob_store import BlobNotFoundError, BlobStoreError, iter_file_chunks
from app.config import AUDIO_CONTENT_TYPE, STREAM_CHUNK_SIZE
from app.ledger import JobPhase, get_job
from app.library import get_library_entry
from app.utils.paths import is_safe_filename, temp_audio_path

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.blob_store import BlobStore

logger = logging.getLogger(__name__)


class StreamSource(StrEnum):
    """Where a stream's bytes come from."""

    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class StreamNotFoundError(Exception):
    """No source currently holds bytes for the requested filename."""

    def __init__(self, filename: str, reason: str = "not found"):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Audio not available for '{filename}': {reason}")


class StreamUnavailableError(Exception):
    """The store holds the filename but could not serve it (e.g. corrupt metadata)."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Audio for '{filename}' could not be opened: {reason}")


@dataclass
class ByteStream:
    """An opened audio stream ready to be sent to a client."""

    source: StreamSource
    chunks: Iterator[bytes]
    size_bytes: int | None
    content_type: str


def resolve_source(session: Session, filename: str) -> StreamSource | None:
    """Pick the source for a filename from the ledger and the library.

    Args:
        session: Active database session.
        filename: Job / library filename.

    Returns:
        The StreamSource to read from, or None if nothing is servable.
    """
    if not is_safe_filename(filename):
        return None

    job = get_job(session, filename)
    if job is not None:
        if job.phase == JobPhase.UPLOADED:
            return StreamSource.PERMANENT
        if job.phase == JobPhase.DOWNLOADED:
            return StreamSource.TEMPORARY
        return None

    entry = get_library_entry(session, filename)
    if entry is not None and entry.ready:
        return StreamSource.PERMANENT
    return None


def open_temp_stream(filename: str, chunk_size: int = STREAM_CHUNK_SIZE) -> ByteStream:
    """Open the transient file for a job.

    Raises:
        StreamNotFoundError: If the name is unsafe or the file is absent.
    """
    if not is_safe_filename(filename):
        raise StreamNotFoundError(filename, "invalid filename")

    path = temp_audio_path(filename)
    try:
        handle = open(path, "rb")
    except FileNotFoundError as e:
        raise StreamNotFoundError(filename, "no transient file") from e

    size_bytes = os.fstat(handle.fileno()).st_size
    return ByteStream(
        source=StreamSource.TEMPORARY,
        chunks=iter_file_chunks(handle, chunk_size),
        size_bytes=size_bytes,
        content_type=AUDIO_CONTENT_TYPE,
    )


def open_permanent_stream(
    filename: str,
    blob_store: BlobStore,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> ByteStream:
    """Open the durably stored object for a filename.

    Raises:
        StreamNotFoundError: If the name is unsafe or the store has no object.
        StreamUnavailableError: If the store has the object but cannot read it.
    """
    if not is_safe_filename(filename):
        raise StreamNotFoundError(filename, "invalid filename")

    try:
        info = blob_store.stat(filename)
        chunks = blob_store.open_stream(filename, chunk_size)
    except BlobNotFoundError as e:
        raise StreamNotFoundError(filename, "no stored object") from e
    except BlobStoreError as e:
        logger.error("Blob store could not open %s: %s", filename, e)
        raise StreamUnavailableError(filename, str(e)) from e

    return ByteStream(
        source=StreamSource.PERMANENT,
        chunks=chunks,
        size_bytes=info.size_bytes,
        content_type=info.content_type or AUDIO_CONTENT_TYPE,
    )


def resolve_stream(session: Session, filename: str, blob_store: BlobStore) -> ByteStream:
    """Open whichever source currently holds the bytes for filename.

    If the transient file disappeared between the phase read and the open
    (the job just reached uploaded), the phase is read once more and the
    permanent copy is served. Never waits for a phase change.

    Args:
        session: Active database session.
        filename: Job / library filename.
        blob_store: Durable store to read permanent bytes from.

    Returns:
        An opened ByteStream.

    Raises:
        StreamNotFoundError: If no source can serve the filename.
        StreamUnavailableError: If the permanent copy exists but cannot be read.
    """
    source = resolve_source(session, filename)
    if source is None:
        raise StreamNotFoundError(filename, "not ready")

    if source == StreamSource.TEMPORARY:
        try:
            return open_temp_stream(filename)
        except StreamNotFoundError:
            # Drop cached rows so the phase is read from the database again
            session.rollback()
            source = resolve_source(session, filename)
            if source != StreamSource.PERMANENT:
                raise
            logger.info("Transient file for %s gone, serving permanent copy", filename)

    return open_permanent_stream(filename, blob_store)
