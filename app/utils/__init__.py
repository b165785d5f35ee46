"""Audio Fetch Pipeline - Utility modules."""

from app.utils.atomic_io import (
    atomic_copy_file,
    atomic_move_file,
    atomic_write_bytes,
    atomic_write_text,
    cleanup_orphan_temp_files,
)
from app.utils.hashing import file_digest_and_size
from app.utils.paths import is_safe_filename, staging_dir_path, temp_audio_path

__all__ = [
    # atomic_io
    "atomic_copy_file",
    "atomic_move_file",
    "atomic_write_bytes",
    "atomic_write_text",
    "cleanup_orphan_temp_files",
    # hashing
    "file_digest_and_size",
    # paths
    "is_safe_filename",
    "staging_dir_path",
    "temp_audio_path",
]
