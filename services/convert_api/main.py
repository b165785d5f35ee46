"""Audio Fetch Pipeline - Convert API FastAPI application.

FastAPI service for creating conversion jobs, polling them and streaming
their audio.

Job creation returns immediately; the conversion itself is queued to the
Celery worker pool (app.celery_app) and driven by app.orchestrator.

Run with:
    uvicorn services.convert_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from app.blob_store import BlobStore, get_blob_store
from app.db import init_db
from app.ledger import list_active_filenames
from app.retrieval import (
    ByteStream,
    StreamNotFoundError,
    StreamUnavailableError,
    open_permanent_stream,
    open_temp_stream,
    resolve_stream,
)
from app.schemas import (
    CreateJobRequest,
    CreateJobResponse,
    ErrorResponse,
    JobStatusResponse,
    LibraryEntryResponse,
    PendingStatusResponse,
)
from services.convert_api.service import (
    ApiErrorCode,
    ConvertApiError,
    create_conversion_job,
    get_job_status,
    list_library_entries,
    recover_stale_jobs,
)

logger = logging.getLogger(__name__)

# Header telling clients which source served a /stream/{filename} response
STREAM_SOURCE_HEADER = "X-Stream-Source"

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_db_session():
    """Dependency that provides a database session."""
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


# --- Lifespan ---


def _recover_stale_jobs_safe() -> None:
    """Fail jobs left in flight by a previous crash (best-effort).

    Never crashes startup.
    """
    try:
        session = get_session_factory()()
        try:
            recover_stale_jobs(session)
        finally:
            session.close()
    except Exception:
        logger.warning("Startup job recovery failed (non-fatal)", exc_info=True)


def _owned_by_live_job(path: Path, active_filenames: set[str]) -> bool:
    """True if a temp entry belongs to a job a worker may still be running."""
    return any(path.name.startswith(f"{filename}.") for filename in active_filenames)


def _cleanup_orphan_temp_files_safe() -> None:
    """Clean up orphan temp files and staging dirs on startup (best-effort).

    Targets transient audio storage and the default blob store root.
    Workers run in their own processes and may still be converting, so
    entries belonging to a starting/downloaded job are left alone. Runs
    after stale-job recovery, which fails the jobs whose workers are gone.
    """
    from app.config import BLOB_DIR, TEMP_AUDIO_DIR
    from app.utils.atomic_io import cleanup_orphan_temp_files
    from app.utils.paths import STAGING_DIR_SUFFIX

    try:
        session = get_session_factory()()
        try:
            active_filenames = list_active_filenames(session)
        finally:
            session.close()

        def keep(path: Path) -> bool:
            return _owned_by_live_job(path, active_filenames)

        total_cleaned = 0
        for directory in (TEMP_AUDIO_DIR, BLOB_DIR):
            total_cleaned += cleanup_orphan_temp_files(directory, keep=keep)

        # Staging dirs of conversions interrupted mid-download
        if TEMP_AUDIO_DIR.exists():
            for staging_dir in TEMP_AUDIO_DIR.glob(f"*{STAGING_DIR_SUFFIX}"):
                if staging_dir.is_dir() and not keep(staging_dir):
                    shutil.rmtree(staging_dir, ignore_errors=True)
                    total_cleaned += 1

        if total_cleaned > 0:
            logger.info("Startup cleanup: removed %d orphan temp entries", total_cleaned)
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Initializes database on startup, recovers interrupted jobs and cleans up
    orphan temp files.
    """
    # Startup: initialize database
    global _session_factory
    _, _session_factory = init_db()

    # Startup: recovery + cleanup (best-effort, never fails)
    _recover_stale_jobs_safe()
    _cleanup_orphan_temp_files_safe()

    yield
    # Shutdown: nothing special needed


# --- FastAPI App ---


app = FastAPI(
    title="Audio Fetch Pipeline - Convert API",
    description="Convert remote media to MP3, poll conversion jobs and stream audio.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes.

    - BAD_REQUEST -> 400
    - NOT_FOUND -> 404
    - QUEUE_FULL -> 503
    - anything else -> 500
    """
    if error_code == ApiErrorCode.BAD_REQUEST:
        return 400
    if error_code == ApiErrorCode.NOT_FOUND:
        return 404
    if error_code == ApiErrorCode.QUEUE_FULL:
        return 503
    return 500


def make_error_response(error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests as BAD_REQUEST instead of FastAPI's 422."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return make_error_response(ApiErrorCode.BAD_REQUEST, message)


def _stream_response(stream: ByteStream, include_source: bool = False) -> StreamingResponse:
    """Build a streaming response for an opened ByteStream."""
    headers = {}
    if stream.size_bytes is not None:
        headers["Content-Length"] = str(stream.size_bytes)
    if include_source:
        headers[STREAM_SOURCE_HEADER] = stream.source.value
    return StreamingResponse(stream.chunks, media_type=stream.content_type, headers=headers)


def _unreadable_response(filename: str) -> JSONResponse:
    """Error response for a stored object the blob store cannot read."""
    return make_error_response(
        ApiErrorCode.INTERNAL_ERROR,
        f"Stored audio for '{filename}' could not be read",
    )


# --- Endpoints ---


@app.post(
    "/create-job",
    status_code=202,
    response_model=CreateJobResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid url"},
        503: {"model": ErrorResponse, "description": "Too many jobs in flight"},
        500: {"model": ErrorResponse, "description": "Job creation failed"},
    },
    summary="Create a conversion job",
    description="Accept a source URL and start converting it in the background.",
)
def create_job_endpoint(
    request: CreateJobRequest,
    session: Annotated[Session, Depends(get_db_session)],
):
    """Create a conversion job.

    Returns as soon as the job row exists; poll /status/{file} for progress.
    """
    try:
        result = create_conversion_job(session=session, url=request.url)
        return CreateJobResponse(file=result.filename, path=result.path)
    except ConvertApiError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        # Log full exception server-side, return generic message to client
        logger.exception("Unexpected error during job creation")
        return make_error_response(
            ApiErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred while creating the job",
        )


@app.get(
    "/status/{filename}",
    response_model=JobStatusResponse | PendingStatusResponse,
    response_model_exclude_none=True,
    summary="Poll a conversion job",
)
def status_endpoint(
    filename: str,
    session: Annotated[Session, Depends(get_db_session)],
):
    """Job projection, or {"phase": "pending"} for unknown filenames.

    error is only present once the job has failed.
    """
    status = get_job_status(session, filename)
    if "filename" not in status:
        return PendingStatusResponse(**status)
    return JobStatusResponse(**status)


@app.get(
    "/stream/temp/{filename}",
    response_class=StreamingResponse,
    responses={404: {"model": ErrorResponse, "description": "No transient file"}},
    summary="Stream audio from transient storage",
)
def stream_temp_endpoint(filename: str):
    """Serve the transient copy written by the conversion worker."""
    try:
        stream = open_temp_stream(filename)
    except StreamNotFoundError as e:
        return make_error_response(ApiErrorCode.NOT_FOUND, str(e))
    return _stream_response(stream)


@app.get(
    "/stream/permanent/{filename}",
    response_class=StreamingResponse,
    responses={
        404: {"model": ErrorResponse, "description": "No stored object"},
        500: {"model": ErrorResponse, "description": "Stored object unreadable"},
    },
    summary="Stream audio from the blob store",
)
def stream_permanent_endpoint(
    filename: str,
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
):
    """Serve the durably stored copy."""
    try:
        stream = open_permanent_stream(filename, blob_store)
    except StreamNotFoundError as e:
        return make_error_response(ApiErrorCode.NOT_FOUND, str(e))
    except StreamUnavailableError:
        return _unreadable_response(filename)
    return _stream_response(stream)


@app.get(
    "/stream/{filename}",
    response_class=StreamingResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Audio not available yet"},
        500: {"model": ErrorResponse, "description": "Stored object unreadable"},
    },
    summary="Stream audio from whichever source holds it",
)
def stream_endpoint(
    filename: str,
    session: Annotated[Session, Depends(get_db_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
):
    """Serve transient bytes while downloaded, permanent bytes once uploaded.

    The chosen source is reported in the X-Stream-Source header.
    """
    try:
        stream = resolve_stream(session, filename, blob_store)
    except StreamNotFoundError as e:
        return make_error_response(ApiErrorCode.NOT_FOUND, str(e))
    except StreamUnavailableError:
        return _unreadable_response(filename)
    return _stream_response(stream, include_source=True)


@app.get(
    "/library",
    response_model=list[LibraryEntryResponse],
    summary="List stored audio, newest first",
)
def library_endpoint(session: Annotated[Session, Depends(get_db_session)]):
    """Full library snapshot (no pagination)."""
    entries = list_library_entries(session)
    return [LibraryEntryResponse.model_validate(entry) for entry in entries]


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
