"""Audio Fetch Pipeline - Convert service logic.

Business logic behind the convert API:
- Job creation with URL validation and backpressure
- Best-effort dispatch to the Celery worker pool
- Status projection and library listing
- Startup recovery of interrupted jobs

The pipeline itself (executor, blob store, library upsert) runs in the
orchestrator, never on the request path.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from app.config import AUDIO_FORMAT, FILENAME_PREFIX, MAX_ACTIVE_JOBS, STALE_JOB_SECONDS
from app.ledger import (
    PENDING_PHASE,
    InvalidPhaseTransition,
    JobPhase,
    count_active_jobs,
    create_job,
    fail_stale_jobs,
    get_job,
    mark_failed,
)
from app.library import list_library

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.models import LibraryEntry

logger = logging.getLogger(__name__)

ALLOWED_URL_SCHEMES = ("http", "https")

# Error code recorded on jobs that could not be handed to the worker pool
DISPATCH_FAILED = "DISPATCH_FAILED"


# --- Error Codes ---


class ApiErrorCode(StrEnum):
    """Error codes returned synchronously by the convert API."""

    BAD_REQUEST = "BAD_REQUEST"
    QUEUE_FULL = "QUEUE_FULL"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ConvertApiError(Exception):
    """Base exception for synchronous API errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class BadRequestError(ConvertApiError):
    """Missing or malformed input."""

    def __init__(self, message: str):
        super().__init__(ApiErrorCode.BAD_REQUEST, message)


class QueueFullError(ConvertApiError):
    """Too many jobs are already in flight."""

    def __init__(self, active: int, limit: int):
        super().__init__(
            ApiErrorCode.QUEUE_FULL,
            f"Conversion queue is full ({active} active jobs, limit {limit}); retry later",
        )


# --- Result Types ---


@dataclass
class CreateJobResult:
    """Result of an accepted creation request."""

    filename: str
    path: str
    dispatched: bool


# --- Convert Service ---


def generate_filename() -> str:
    """Generate a fresh job filename.

    Format: {prefix}-{epoch milliseconds}-{6 hex chars}.{ext}
    """
    return f"{FILENAME_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3)}.{AUDIO_FORMAT}"


def permanent_stream_path(filename: str) -> str:
    """API path serving the durably stored audio for a filename."""
    return f"/stream/permanent/{filename}"


def validate_source_url(url: str | None) -> str:
    """Check that a source reference is a usable http(s) URL.

    Args:
        url: Raw value from the request body.

    Returns:
        The URL with surrounding whitespace removed.

    Raises:
        BadRequestError: If the URL is missing, blank or not http(s).
    """
    if url is None or not url.strip():
        raise BadRequestError("url is required")

    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
        raise BadRequestError(f"url must be an http or https URL: {url!r}")
    return url


def create_conversion_job(
    session: Session,
    url: str | None,
    max_active_jobs: int | None = None,
) -> CreateJobResult:
    """Create a job in phase starting and hand it to the worker pool.

    1. Validate the URL
    2. Reject when max_active_jobs jobs are already starting/downloaded
    3. Insert the job and commit
    4. Enqueue the conversion; on failure the job is marked failed

    Args:
        session: Active database session.
        url: Source reference from the request.
        max_active_jobs: Backpressure limit (defaults to config.MAX_ACTIVE_JOBS).

    Returns:
        CreateJobResult with the generated filename.

    Raises:
        BadRequestError: If the URL is invalid.
        QueueFullError: If the active job limit is reached.

    Note:
        This function commits the session.
    """
    source_url = validate_source_url(url)

    limit = max_active_jobs if max_active_jobs is not None else MAX_ACTIVE_JOBS
    active = count_active_jobs(session)
    if active >= limit:
        logger.warning("Rejecting job for %s: %d active jobs (limit %d)", source_url, active, limit)
        raise QueueFullError(active, limit)

    filename = generate_filename()
    create_job(session, filename, source_url)
    session.commit()
    logger.info("Created job %s for %s", filename, source_url)

    dispatched = _enqueue_conversion_safe(filename)
    if not dispatched:
        try:
            mark_failed(session, filename, f"{DISPATCH_FAILED}: could not queue conversion")
            session.commit()
        except InvalidPhaseTransition:
            # A worker already picked the job up
            session.rollback()

    return CreateJobResult(
        filename=filename,
        path=permanent_stream_path(filename),
        dispatched=dispatched,
    )


def _enqueue_conversion_safe(filename: str) -> bool:
    """Enqueue the conversion task, handling broker errors.

    Args:
        filename: Job filename to convert.

    Returns:
        True if the task was queued.
    """
    try:
        from app.celery_app import enqueue_conversion

        enqueue_conversion(filename)
        logger.debug("Enqueued conversion for %s", filename)
        return True
    except Exception:
        logger.warning("Failed to enqueue conversion for %s", filename, exc_info=True)
        return False


def get_job_status(session: Session, filename: str) -> dict[str, Any]:
    """Project a job for polling clients.

    Unknown filenames get a synthetic {"phase": "pending"} instead of an error.
    The error key is only set for failed jobs.
    """
    job = get_job(session, filename)
    if job is None:
        return {"phase": PENDING_PHASE}

    status = {
        "filename": job.filename,
        "source_url": job.source_url,
        "phase": job.phase,
        "ready": job.phase == JobPhase.UPLOADED,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }
    if job.phase == JobPhase.FAILED:
        status["error"] = job.error_message
    return status


def list_library_entries(session: Session) -> list[LibraryEntry]:
    """All library entries, newest first."""
    return list_library(session)


def recover_stale_jobs(session: Session, older_than_seconds: int | None = None) -> list[str]:
    """Fail jobs left non-terminal by a crashed worker and commit.

    Args:
        session: Active database session.
        older_than_seconds: Age threshold (defaults to config.STALE_JOB_SECONDS).

    Returns:
        Filenames of the jobs that were failed.
    """
    threshold = older_than_seconds if older_than_seconds is not None else STALE_JOB_SECONDS
    failed = fail_stale_jobs(session, threshold)
    session.commit()
    if failed:
        logger.info("Recovery: failed %d stale jobs", len(failed))
    return failed
