"""Audio Fetch Pipeline - Canonical path utilities.

Returns canonical Paths for transient storage. Does NOT create directories.
Directory creation is the responsibility of the calling code.

Filenames arrive from URLs, so every helper validates that the name is a
single safe path component before joining it to a directory.
"""

import re
from pathlib import Path

from app.config import TEMP_AUDIO_DIR

# Letters, digits, dot, dash, underscore; must not start with a dot
_SAFE_FILENAME_RE = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]{0,127}")

# Suffix of the per-job staging directory used by the conversion executor
STAGING_DIR_SUFFIX = ".staging"


def is_safe_filename(filename: str) -> bool:
    """Check whether a name can be used as a single path component.

    Args:
        filename: Candidate filename (job filename or blob key).

    Returns:
        True if the name contains no separators, no leading dot and only
        allowed characters.
    """
    return bool(filename) and _SAFE_FILENAME_RE.fullmatch(filename) is not None


def require_safe_filename(filename: str) -> str:
    """Return the filename unchanged, or raise ValueError if it is unsafe."""
    if not is_safe_filename(filename):
        raise ValueError(f"Unsafe filename: {filename!r}")
    return filename


def temp_audio_path(filename: str) -> Path:
    """Get canonical transient path for a job's converted audio.

    Args:
        filename: Job filename.

    Returns:
        Path: data/tmp/{filename}

    Raises:
        ValueError: If filename is not a safe path component.
    """
    return TEMP_AUDIO_DIR / require_safe_filename(filename)


def staging_dir_path(destination: Path) -> Path:
    """Get the staging directory the executor downloads into.

    Lives beside the destination so the final publish is a same-filesystem
    rename.

    Args:
        destination: Final output path.

    Returns:
        Path: {destination}.staging
    """
    destination = Path(destination)
    return destination.with_name(destination.name + STAGING_DIR_SUFFIX)
