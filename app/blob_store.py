"""Audio Fetch Pipeline - Blob store adapter.

Durable storage is an opaque capability: store bytes under a key, stream
bytes back by key. The pipeline only talks to the BlobStore protocol.

LocalBlobStore is the default implementation. It keeps each object as a
plain file under a root directory with a JSON sidecar describing it:

    {root}/{key}            content (published atomically)
    {root}/{key}.meta.json  content_type, size_bytes, content_hash

The sidecar is written after the content, so an object is only reported as
existing once both are in place.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

from app.config import BLOB_DIR, STREAM_CHUNK_SIZE
from app.utils.atomic_io import atomic_copy_file, atomic_write_text
from app.utils.paths import is_safe_filename

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


class BlobStoreError(Exception):
    """Durable storage failed."""


class BlobNotFoundError(BlobStoreError):
    """No complete object is stored under the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Blob not found: {key}")


@dataclass
class BlobInfo:
    """Description of a stored object, as confirmed by the store."""

    key: str
    size_bytes: int
    content_hash: str
    content_type: str


class BlobStore(Protocol):
    """Key/bytes storage used for finished audio."""

    def put_file(self, key: str, source_path: str | Path, content_type: str) -> BlobInfo:
        """Store the contents of a local file under key, replacing any previous object."""
        ...

    def exists(self, key: str) -> bool:
        """Whether a complete object is stored under key."""
        ...

    def stat(self, key: str) -> BlobInfo:
        """Describe the object stored under key. Raises BlobNotFoundError."""
        ...

    def open_stream(self, key: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        """Open the object for reading. Raises BlobNotFoundError immediately if absent."""
        ...


class LocalBlobStore:
    """Filesystem-backed blob store."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _content_path(self, key: str) -> Path:
        if not is_safe_filename(key):
            raise BlobNotFoundError(key)
        return self.root / key

    def _meta_path(self, key: str) -> Path:
        return self._content_path(key).with_name(key + META_SUFFIX)

    def put_file(self, key: str, source_path: str | Path, content_type: str) -> BlobInfo:
        if not is_safe_filename(key):
            raise BlobStoreError(f"Invalid blob key: {key!r}")

        content_path = self.root / key
        try:
            content_hash, size_bytes = atomic_copy_file(source_path, content_path)
            info = BlobInfo(
                key=key,
                size_bytes=size_bytes,
                content_hash=content_hash,
                content_type=content_type,
            )
            atomic_write_text(self._meta_path(key), json.dumps(asdict(info)))
        except OSError as e:
            raise BlobStoreError(f"Failed to store {key}: {e}") from e

        logger.info("Stored blob %s (%d bytes)", key, size_bytes)
        return info

    def exists(self, key: str) -> bool:
        try:
            return self._content_path(key).is_file() and self._meta_path(key).is_file()
        except BlobNotFoundError:
            return False

    def stat(self, key: str) -> BlobInfo:
        meta_path = self._meta_path(key)
        if not self._content_path(key).is_file():
            raise BlobNotFoundError(key)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return BlobInfo(**data)
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except (OSError, ValueError, TypeError) as e:
            raise BlobStoreError(f"Unreadable metadata for {key}: {e}") from e

    def open_stream(self, key: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        if not self.exists(key):
            raise BlobNotFoundError(key)
        try:
            handle = open(self._content_path(key), "rb")
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        return iter_file_chunks(handle, chunk_size)


def iter_file_chunks(handle, chunk_size: int) -> Iterator[bytes]:
    """Yield chunks from an open binary handle, closing it when done."""
    try:
        while chunk := handle.read(chunk_size):
            yield chunk
    finally:
        handle.close()


# --- Process default ---

_blob_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    """Get the process-wide blob store (LocalBlobStore at config.BLOB_DIR)."""
    global _blob_store
    if _blob_store is None:
        _blob_store = LocalBlobStore(BLOB_DIR)
    return _blob_store


def override_blob_store(store: BlobStore | None) -> None:
    """Replace the process-wide blob store (None restores the default)."""
    global _blob_store
    _blob_store = store
