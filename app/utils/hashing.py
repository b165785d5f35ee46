"""Audio Fetch Pipeline - Hashing utilities.

All hash functions return HEX DIGEST ONLY (no prefix).
"""

import hashlib
from pathlib import Path


def file_digest_and_size(path: str | Path) -> tuple[str, int]:
    """Compute SHA256 hex digest and byte size of a file in one pass.

    Used to confirm that the blob store holds exactly the bytes that were
    converted locally.

    Args:
        path: Path to the file to hash.

    Returns:
        Tuple of (hex_digest, size_bytes). The digest is 64 lowercase hex
        characters, no prefix.

    Raises:
        FileNotFoundError: If the file does not exist.
        OSError: If the file cannot be read.
    """
    hasher = hashlib.sha256()
    size = 0

    with open(Path(path), "rb") as f:
        while chunk := f.read(65536):
            hasher.update(chunk)
            size += len(chunk)

    return hasher.hexdigest(), size
