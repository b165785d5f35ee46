"""Audio Fetch Pipeline - Atomic I/O utilities.

Atomic publish rule used for every file a reader may observe:
1. Write to a temp path in the same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

A final path therefore either holds complete data or does not exist.
Partial writes only ever affect the temp file.
"""

import hashlib
import logging
import os
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, retrying short writes and EINTR.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except InterruptedError:
            continue
        if written == 0:
            raise OSError("os.write() returned 0 bytes unexpectedly")
        view = view[written:]


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory so a rename survives power loss."""
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY is not available everywhere
        pass


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = TEMP_SUFFIX,
) -> None:
    """Atomically write bytes to a file.

    Args:
        final_path: The target path for the final file.
        data: Bytes to write.
        temp_suffix: Suffix for the temporary file.

    Raises:
        OSError: If directory creation, write, or rename fails.
    """
    final_path = Path(final_path)
    temp_path = final_path.with_name(final_path.name + temp_suffix)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_all(fd, data)
        os.fsync(fd)
    except OSError:
        os.close(fd)
        _remove_quietly(temp_path)
        raise
    else:
        os.close(fd)

    os.replace(temp_path, final_path)
    _fsync_directory(final_path.parent)


def atomic_write_text(
    final_path: str | Path,
    text: str,
    encoding: str = "utf-8",
    temp_suffix: str = TEMP_SUFFIX,
) -> None:
    """Atomically write text to a file. See atomic_write_bytes."""
    atomic_write_bytes(final_path, text.encode(encoding), temp_suffix)


def atomic_copy_file(
    source_path: str | Path,
    final_path: str | Path,
    temp_suffix: str = TEMP_SUFFIX,
    chunk_size: int = 65536,
) -> tuple[str, int]:
    """Atomically copy a file, hashing the bytes as they are written.

    Args:
        source_path: Path to the source file.
        final_path: Target path for the copy.
        temp_suffix: Suffix for the temporary file.
        chunk_size: Buffer size for copying.

    Returns:
        Tuple of (sha256_hex, size_bytes) of the bytes written.

    Raises:
        FileNotFoundError: If source file does not exist.
        OSError: If copy or rename fails.
    """
    source_path = Path(source_path)
    final_path = Path(final_path)
    temp_path = final_path.with_name(final_path.name + temp_suffix)

    if not source_path.exists():
        raise FileNotFoundError(f"Source file not found: {source_path}")

    final_path.parent.mkdir(parents=True, exist_ok=True)

    hasher = hashlib.sha256()
    total_bytes = 0

    src_fd = os.open(source_path, os.O_RDONLY)
    try:
        dst_fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        try:
            while True:
                chunk = os.read(src_fd, chunk_size)
                if not chunk:
                    break
                _write_all(dst_fd, chunk)
                hasher.update(chunk)
                total_bytes += len(chunk)
            os.fsync(dst_fd)
        except OSError:
            os.close(dst_fd)
            _remove_quietly(temp_path)
            raise
        else:
            os.close(dst_fd)
    finally:
        os.close(src_fd)

    os.replace(temp_path, final_path)
    _fsync_directory(final_path.parent)

    return hasher.hexdigest(), total_bytes


def atomic_move_file(source_path: str | Path, final_path: str | Path) -> None:
    """Publish a finished file by renaming it into place.

    Source and destination must be on the same filesystem.

    Raises:
        FileNotFoundError: If source file does not exist.
        OSError: If the rename fails.
    """
    source_path = Path(source_path)
    final_path = Path(final_path)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    # fsync the data before it becomes visible under the final name
    fd = os.open(source_path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)

    os.replace(source_path, final_path)
    _fsync_directory(final_path.parent)


def cleanup_orphan_temp_files(
    directory: str | Path,
    temp_suffix: str = TEMP_SUFFIX,
    keep: Callable[[Path], bool] | None = None,
) -> int:
    """Clean up orphan temp files left by interrupted atomic writes.

    Args:
        directory: Directory to scan (non-recursive).
        temp_suffix: Suffix pattern to match.
        keep: Optional predicate; matching files it returns True for are
            left alone (e.g. writes still owned by a live job).

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    for temp_file in directory.glob(f"*{temp_suffix}"):
        if not temp_file.is_file():
            continue
        if keep is not None and keep(temp_file):
            continue
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            logger.debug("Could not remove orphan temp file %s", temp_file)

    return removed
