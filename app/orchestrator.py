"""Audio Fetch Pipeline - Orchestrator logic.

Drives one conversion job through its phases:

    starting -> downloaded -> uploaded
    (either non-terminal phase -> failed)

1. Run the conversion executor into transient storage (data/tmp/{filename})
2. Mark downloaded; the file is now streamable from transient storage
3. Copy the file into the blob store and check what the store confirms
4. Upsert the library entry and mark uploaded in ONE commit
5. Remove the transient file (best-effort)

Every transition is a compare-and-set on the job ledger, so a redelivered
task or a concurrent recovery pass can never move a job backwards. A task
redelivered for a job stuck in downloaded picks up again at step 3, or
fails the job with INTERRUPTED when the transient file is gone.

run_conversion never raises. Any failure is recorded on the job as
"<CODE>: <detail>" and surfaced through status polling.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from app.blob_store import get_blob_store
from app.config import AUDIO_CONTENT_TYPE
from app.db import init_db
from app.ledger import InvalidPhaseTransition, JobPhase, get_job, mark_failed, transition_phase
from app.library import upsert_library_entry
from app.utils.hashing import file_digest_and_size
from app.utils.paths import temp_audio_path

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from app.blob_store import BlobInfo, BlobStore

logger = logging.getLogger(__name__)


# --- Pipeline Error Codes ---


class PipelineErrorCode:
    """Error codes recorded on failed jobs by the orchestrator."""

    STORAGE_FAILED = "STORAGE_FAILED"
    INTERRUPTED = "INTERRUPTED"
    WORKER_ERROR = "WORKER_ERROR"


class StorageFailure(Exception):
    """The blob store did not durably confirm the uploaded bytes."""


# --- Helpers ---


def format_failure(error_code: str, detail: str | None) -> str:
    """Build the human-readable failure string stored on a job."""
    return f"{error_code}: {detail or 'no detail'}"


def _record_failure(SessionFactory: sessionmaker, filename: str, message: str) -> bool:
    """Move a job to failed in its own transaction.

    Returns:
        True if the job was failed, False if it was already terminal or missing.
    """
    session = SessionFactory()
    try:
        mark_failed(session, filename, message)
        session.commit()
    except InvalidPhaseTransition as e:
        session.rollback()
        logger.warning("Could not record failure for %s: %s", filename, e)
        return False
    except Exception:
        session.rollback()
        logger.exception("Failed to persist failure for %s", filename)
        return False
    finally:
        session.close()

    logger.warning("Job %s failed: %s", filename, message)
    return True


def _remove_temp_file_safe(path: Path) -> None:
    """Remove the transient file after durable confirmation (best-effort)."""
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Failed to remove transient file %s (non-fatal)", path, exc_info=True)


def _store_durably(blob_store: BlobStore, filename: str, local_path: Path) -> BlobInfo:
    """Copy the transient file into the blob store and verify the confirmation.

    Raises:
        StorageFailure: If the store fails or confirms different bytes.
    """
    local_hash, local_size = file_digest_and_size(local_path)

    try:
        info = blob_store.put_file(filename, local_path, AUDIO_CONTENT_TYPE)
    except Exception as e:
        raise StorageFailure(f"{e.__class__.__name__}: {e}") from e

    if info.size_bytes != local_size or info.content_hash != local_hash:
        raise StorageFailure(
            f"stored object mismatch for {filename} "
            f"(local {local_size} bytes/{local_hash[:12]}, "
            f"stored {info.size_bytes} bytes/{(info.content_hash or '')[:12]})"
        )

    return info


# --- Orchestrator Entry Point ---


def run_conversion(
    filename: str,
    *,
    session_factory: sessionmaker | None = None,
    executor: Callable | None = None,
    blob_store: BlobStore | None = None,
) -> dict:
    """Run the full conversion pipeline for one job.

    This is the main entry point called by the Celery task.
    Safe to call more than once: a job past downloaded is skipped and a job
    left in downloaded resumes at durable storage.

    Args:
        filename: Job filename (ledger key, blob key and library key).
        session_factory: Session factory override (defaults to init_db()).
        executor: Conversion executor override
            (defaults to services.worker_convert.run.execute_conversion).
        blob_store: Blob store override (defaults to get_blob_store()).

    Returns:
        Dict describing what happened (for logging/debugging).
    """
    if session_factory is None:
        _, session_factory = init_db()
    if executor is None:
        # Import here so the API process does not load yt-dlp
        from services.worker_convert.run import execute_conversion

        executor = execute_conversion
    if blob_store is None:
        blob_store = get_blob_store()

    try:
        return _run_conversion_impl(session_factory, filename, executor, blob_store)
    except Exception as e:
        logger.exception("Conversion pipeline crashed for %s", filename)
        message = format_failure(PipelineErrorCode.WORKER_ERROR, f"{e.__class__.__name__}: {e}")
        _record_failure(session_factory, filename, message)
        return {"status": "error", "filename": filename, "phase": JobPhase.FAILED, "error": message}




def _run_conversion_impl(
    SessionFactory: sessionmaker,
    filename: str,
    executor: Callable,
    blob_store: BlobStore,
) -> dict:
    """Implementation of run_conversion.

    Opens a short-lived session per step so no transaction is held open
    while the executor or the blob store is working.

    A job found in downloaded (task redelivered after a worker died) resumes
    at durable storage if its transient file survived, and is failed with
    INTERRUPTED otherwise.
    """
    # 1. Load the job
    session = SessionFactory()
    try:
        job = get_job(session, filename)
        if job is None:
            logger.warning("No job found for %s, skipping", filename)
            return {"status": "skipped", "filename": filename, "reason": "job_not_found"}
        phase = job.phase
        source_url = job.source_url
    finally:
        session.close()

    local_path = temp_audio_path(filename)

    if phase == JobPhase.DOWNLOADED:
        return _resume_downloaded(SessionFactory, filename, source_url, local_path, blob_store)

    if phase != JobPhase.STARTING:
        logger.info("Job %s already in phase %s, skipping", filename, phase)
        return {"status": "skipped", "filename": filename, "phase": phase, "reason": "not_starting"}

    # 2. Convert into transient storage
    local_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Converting %s from %s", filename, source_url)
    result = executor(source_url, local_path)

    if not result.ok:
        error_code = result.error_code or PipelineErrorCode.WORKER_ERROR
        message = format_failure(error_code, result.message)
        _record_failure(SessionFactory, filename, message)
        return {"status": "error", "filename": filename, "phase": JobPhase.FAILED, "error": message}

    if not local_path.is_file():
        message = format_failure(
            "OUTPUT_MISSING", f"executor reported success but {local_path} is absent"
        )
        _record_failure(SessionFactory, filename, message)
        return {"status": "error", "filename": filename, "phase": JobPhase.FAILED, "error": message}

    metadata = result.metadata
    title = metadata.title if metadata is not None else None
    duration_sec = metadata.duration_sec if metadata is not None else None
    if metadata is None:
        logger.info("No metadata for %s, title falls back to filename", filename)

    # 3. starting -> downloaded
    session = SessionFactory()
    try:
        transition_phase(session, filename, JobPhase.DOWNLOADED)
        session.commit()
    except InvalidPhaseTransition as e:
        session.rollback()
        logger.warning("Job %s moved underneath the pipeline: %s", filename, e)
        return {"status": "skipped", "filename": filename, "reason": "phase_changed"}
    finally:
        session.close()

    outcome = _publish(
        SessionFactory,
        filename,
        source_url,
        local_path,
        blob_store,
        title=title,
        duration_sec=duration_sec,
    )
    if outcome["status"] == "ok":
        outcome["metadata_error"] = result.metadata_error
    return outcome


def _resume_downloaded(
    SessionFactory: sessionmaker,
    filename: str,
    source_url: str,
    local_path: Path,
    blob_store: BlobStore,
) -> dict:
    """Finish a job left in downloaded by an interrupted worker."""
    if not local_path.is_file():
        message = format_failure(
            PipelineErrorCode.INTERRUPTED,
            f"worker stopped after download and {local_path} is gone",
        )
        _record_failure(SessionFactory, filename, message)
        return {"status": "error", "filename": filename, "phase": JobPhase.FAILED, "error": message}

    # Metadata lived only in the interrupted worker; title falls back to filename
    logger.info("Resuming %s at durable storage", filename)
    outcome = _publish(SessionFactory, filename, source_url, local_path, blob_store)
    if outcome["status"] == "ok":
        outcome["resumed"] = True
    return outcome


def _publish(
    SessionFactory: sessionmaker,
    filename: str,
    source_url: str,
    local_path: Path,
    blob_store: BlobStore,
    title: str | None = None,
    duration_sec: float | None = None,
) -> dict:
    """Store a downloaded job durably, then mark it uploaded.

    Every step is safe to repeat: the blob put overwrites atomically, the
    library write is an upsert and the final transition is a compare-and-set.
    """
    # 4. Durable storage (transient file is left in place on failure)
    try:
        info = _store_durably(blob_store, filename, local_path)
    except StorageFailure as e:
        message = format_failure(PipelineErrorCode.STORAGE_FAILED, str(e))
        _record_failure(SessionFactory, filename, message)
        return {"status": "error", "filename": filename, "phase": JobPhase.FAILED, "error": message}

    # 5. Library entry + downloaded -> uploaded, committed together
    session = SessionFactory()
    try:
        entry = upsert_library_entry(
            session,
            filename=filename,
            source_url=source_url,
            title=title,
            duration_sec=duration_sec,
            content_type=info.content_type,
            size_bytes=info.size_bytes,
            content_hash=info.content_hash,
        )
        transition_phase(session, filename, JobPhase.UPLOADED)
        session.commit()
        entry_title = entry.title
    except InvalidPhaseTransition as e:
        session.rollback()
        logger.warning("Job %s moved before upload commit: %s", filename, e)
        return {"status": "skipped", "filename": filename, "reason": "phase_changed"}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    # 6. Readers now resolve to the blob store
    _remove_temp_file_safe(local_path)

    return {
        "status": "ok",
        "filename": filename,
        "phase": JobPhase.UPLOADED,
        "title": entry_title,
        "size_bytes": info.size_bytes,
    }
