"""Audio Fetch Pipeline - Configuration constants.

No external config libraries. Paths are relative to the repository root;
tunables can be overridden with AFP_* environment variables.
"""

import os
from pathlib import Path

# Repository root (parent of app/)
REPO_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = REPO_ROOT / "data"
# Transient storage: converted files live here until the blob store confirms
TEMP_AUDIO_DIR = DATA_DIR / "tmp"
# Default durable storage root for LocalBlobStore
BLOB_DIR = DATA_DIR / "blobs"

# Database path
DB_PATH = DATA_DIR / "audio_fetch.db"

# Queue directory and broker database path
QUEUE_DIR = DATA_DIR / "queue"
QUEUE_DB_PATH = QUEUE_DIR / "broker.db"


def _get_positive_int(env_name: str, default: int) -> int:
    """Read a positive integer from the environment.

    Invalid or non-positive values fall back to the default.

    Args:
        env_name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The parsed value or the default.
    """
    env_val = os.environ.get(env_name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_flag(env_name: str) -> bool:
    """Read a boolean flag ("1", "true", "yes") from the environment."""
    return os.environ.get(env_name, "").strip().lower() in ("1", "true", "yes")


# Worker pool size for the conversion queue
WORKER_CONCURRENCY = _get_positive_int("AFP_WORKER_CONCURRENCY", 2)

# Creation requests are rejected once this many jobs are starting/downloaded
MAX_ACTIVE_JOBS = _get_positive_int("AFP_MAX_ACTIVE_JOBS", 16)

# Non-terminal jobs older than this are failed by startup recovery
STALE_JOB_SECONDS = _get_positive_int("AFP_STALE_JOB_SEC", 3600)

# Task broker (kombu SQLAlchemy transport on a local SQLite file by default)
BROKER_URL = os.environ.get("AFP_BROKER_URL") or f"sqla+sqlite:///{QUEUE_DB_PATH}"

# Use aria2c as yt-dlp's external downloader when it is installed
USE_ARIA2C = _get_flag("AFP_USE_ARIA2C")

# Output audio preset
AUDIO_FORMAT = "mp3"
AUDIO_QUALITY = "5"  # ffmpeg VBR scale; "0" = best (slower)
AUDIO_CONTENT_TYPE = "audio/mpeg"

# Generated filenames look like yt-1718000000000-a1b2c3.mp3
FILENAME_PREFIX = "yt"

# Read size for streaming responses and blob copies
STREAM_CHUNK_SIZE = 65536
