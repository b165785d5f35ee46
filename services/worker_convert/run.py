"""Audio Fetch Pipeline - Conversion Worker.

Fetches a remote media reference and transcodes it to a local MP3.

Input: source URL (anything yt-dlp can extract)
Output: one fully formed audio file at the requested destination path

Steps:
1. Metadata lookup (title, duration). Best-effort: a failure here is
   recorded on the result but never fails the conversion.
2. Download best audio + extract to MP3 with ffmpeg, inside a staging
   directory beside the destination.
3. Atomic publish: rename the finished MP3 onto the destination path.

Dependencies:
- yt-dlp (Python package)
- ffmpeg installed and in PATH (audio extraction post-processor)
- aria2c (optional external downloader, see config.USE_ARIA2C)

Error codes:
- FETCH_FAILED: yt-dlp could not fetch or extract the source
- TRANSCODE_FAILED: ffmpeg audio extraction failed
- OUTPUT_MISSING: the tool finished but no MP3 was produced
- WORKER_ERROR: local failure (disk, permissions, unexpected error)
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

import yt_dlp
from yt_dlp.utils import DownloadError, PostProcessingError

from app.config import AUDIO_FORMAT, AUDIO_QUALITY, USE_ARIA2C
from app.utils.atomic_io import atomic_move_file
from app.utils.paths import staging_dir_path

logger = logging.getLogger(__name__)

# --- Constants ---

# Base name of the file yt-dlp writes inside the staging directory
STAGING_BASENAME = "audio"

# aria2c tuning carried over from the original deployment
ARIA2C_ARGS = [
    "--min-split-size=1M",
    "--max-connection-per-server=16",
    "--max-concurrent-downloads=16",
    "--split=16",
]


# --- Error Codes ---


class ConvertErrorCode:
    """Error codes for the conversion stage."""

    FETCH_FAILED = "FETCH_FAILED"
    TRANSCODE_FAILED = "TRANSCODE_FAILED"
    OUTPUT_MISSING = "OUTPUT_MISSING"
    WORKER_ERROR = "WORKER_ERROR"


# --- Result Types ---


@dataclass
class ConvertMetadata:
    """Best-effort metadata about the source."""

    title: str | None = None
    duration_sec: float | None = None


@dataclass
class ConvertResult:
    """Result of a conversion.

    ok=True with metadata=None means the transcode succeeded but the
    metadata lookup did not; metadata_error carries the reason.
    """

    ok: bool
    local_path: str | None = None
    metadata: ConvertMetadata | None = None
    metadata_error: str | None = None
    error_code: str | None = None
    message: str | None = None
    convert_time_ms: int = 0


# --- yt-dlp ---


def _build_download_options(staging_dir: Path) -> dict:
    """Build yt-dlp options for audio download + MP3 extraction.

    Args:
        staging_dir: Directory yt-dlp writes into.

    Returns:
        Options dictionary for yt_dlp.YoutubeDL.
    """
    ydl_opts = {
        "format": "bestaudio/best",
        "outtmpl": str(staging_dir / f"{STAGING_BASENAME}.%(ext)s"),
        "noplaylist": True,
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
        "postprocessors": [
            {
                "key": "FFmpegExtractAudio",
                "preferredcodec": AUDIO_FORMAT,
                "preferredquality": AUDIO_QUALITY,
            }
        ],
    }

    if USE_ARIA2C and shutil.which("aria2c"):
        ydl_opts["external_downloader"] = {"default": "aria2c"}
        ydl_opts["external_downloader_args"] = {"aria2c": list(ARIA2C_ARGS)}

    return ydl_opts


def fetch_metadata(source_url: str) -> ConvertMetadata:
    """Look up title and duration without downloading.

    Args:
        source_url: Source reference.

    Returns:
        ConvertMetadata with whatever fields the extractor reported.

    Raises:
        Exception: Any yt-dlp failure. Callers treat this as non-fatal.
    """
    ydl_opts = {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "skip_download": True,
    }

    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        info = ydl.extract_info(source_url, download=False)

    if not info:
        raise DownloadError("No metadata returned")

    duration = info.get("duration")
    return ConvertMetadata(
        title=info.get("title") or None,
        duration_sec=float(duration) if duration is not None else None,
    )


def _download_audio(source_url: str, staging_dir: Path) -> Path | None:
    """Download and transcode into the staging directory.

    Args:
        source_url: Source reference.
        staging_dir: Empty directory for yt-dlp output.

    Returns:
        Path of the produced MP3, or None if yt-dlp finished without one.

    Raises:
        DownloadError, PostProcessingError: yt-dlp failures.
    """
    ydl_opts = _build_download_options(staging_dir)

    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        ydl.download([source_url])

    expected = staging_dir / f"{STAGING_BASENAME}.{AUDIO_FORMAT}"
    if expected.is_file():
        return expected

    # Extractors may name the output differently; take the largest MP3
    candidates = [p for p in staging_dir.glob(f"*.{AUDIO_FORMAT}") if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_size)


def _is_postprocessing_failure(exc: BaseException) -> bool:
    """Whether a yt-dlp error came from the ffmpeg post-processor."""
    if isinstance(exc, PostProcessingError):
        return True
    exc_info = getattr(exc, "exc_info", None)
    if exc_info and exc_info[0] is not None:
        return issubclass(exc_info[0], PostProcessingError)
    return False


def _cleanup_staging_dir(staging_dir: Path) -> None:
    """Remove the staging directory (best-effort)."""
    try:
        shutil.rmtree(staging_dir)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to clean up staging dir %s: %s", staging_dir, e)


# --- Conversion ---


def execute_conversion(source_url: str, destination_path: str | Path) -> ConvertResult:
    """Convert a source reference into an MP3 at destination_path.

    Never raises; failures are reported on the result.

    Args:
        source_url: Source reference supplied by the requester.
        destination_path: Where the finished file must appear.

    Returns:
        ConvertResult describing success (with optional metadata) or failure.
    """
    destination = Path(destination_path)
    staging_dir = staging_dir_path(destination)
    start = time.monotonic()

    # 1. Metadata (non-fatal)
    metadata = None
    metadata_error = None
    try:
        metadata = fetch_metadata(source_url)
    except Exception as e:
        metadata_error = str(e) or e.__class__.__name__
        logger.warning("Metadata lookup failed for %s (non-fatal): %s", source_url, metadata_error)

    # 2. Download + transcode
    try:
        if staging_dir.exists():
            _cleanup_staging_dir(staging_dir)
        staging_dir.mkdir(parents=True, exist_ok=True)

        produced = _download_audio(source_url, staging_dir)
        if produced is None:
            _cleanup_staging_dir(staging_dir)
            return ConvertResult(
                ok=False,
                metadata=metadata,
                metadata_error=metadata_error,
                error_code=ConvertErrorCode.OUTPUT_MISSING,
                message=f"No {AUDIO_FORMAT} file produced for {source_url}",
            )

        # 3. Atomic publish
        atomic_move_file(produced, destination)
    except (DownloadError, PostProcessingError) as e:
        _cleanup_staging_dir(staging_dir)
        code = (
            ConvertErrorCode.TRANSCODE_FAILED
            if _is_postprocessing_failure(e)
            else ConvertErrorCode.FETCH_FAILED
        )
        logger.error("Conversion failed for %s: %s - %s", source_url, code, e)
        return ConvertResult(
            ok=False,
            metadata=metadata,
            metadata_error=metadata_error,
            error_code=code,
            message=str(e),
        )
    except Exception as e:
        _cleanup_staging_dir(staging_dir)
        logger.exception("Conversion worker error for %s", source_url)
        return ConvertResult(
            ok=False,
            metadata=metadata,
            metadata_error=metadata_error,
            error_code=ConvertErrorCode.WORKER_ERROR,
            message=f"{e.__class__.__name__}: {e}",
        )

    _cleanup_staging_dir(staging_dir)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    logger.info(
        "Converted %s -> %s (%d bytes, %dms)",
        source_url,
        destination,
        destination.stat().st_size,
        elapsed_ms,
    )

    return ConvertResult(
        ok=True,
        local_path=str(destination),
        metadata=metadata,
        metadata_error=metadata_error,
        convert_time_ms=elapsed_ms,
    )


# --- Standalone Execution ---


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <source_url> <destination_path>")
        sys.exit(1)

    result = execute_conversion(sys.argv[1], sys.argv[2])
    if result.ok:
        print(f"Success: {result.local_path}")
        if result.metadata is not None:
            print(f"Title: {result.metadata.title}")
            print(f"Duration: {result.metadata.duration_sec}")
        else:
            print(f"Metadata unavailable: {result.metadata_error}")
        sys.exit(0)
    else:
        print(f"Error: {result.error_code} - {result.message}")
        sys.exit(1)
