"""Audio Fetch Pipeline - Pydantic models for API validation.

Request/response models for the convert API. Used by FastAPI for runtime
validation and for the OpenAPI document.
"""

from datetime import datetime  # noqa: I001

from pydantic import BaseModel, ConfigDict, Field


# --- Request Models ---


class CreateJobRequest(BaseModel):
    """Request payload for creating a conversion job.

    url is optional at the model level so a missing url is reported with the
    same BAD_REQUEST body as a blank or malformed one.
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(
        default=None,
        description="Remote media reference (http or https URL) to convert",
    )


# --- Response Models ---


class CreateJobResponse(BaseModel):
    """Response for an accepted conversion job."""

    model_config = ConfigDict(extra="forbid")

    file: str = Field(..., description="Generated job filename, used for polling and streaming")
    path: str = Field(..., description="Permanent stream path once the job is uploaded")
    status: str = Field(default="processing", description="Always 'processing' on acceptance")


class JobStatusResponse(BaseModel):
    """Projection of a job ledger row for polling clients."""

    model_config = ConfigDict(extra="forbid")

    filename: str = Field(..., description="Job filename")
    source_url: str = Field(..., description="Reference supplied at creation")
    phase: str = Field(..., description="Phase: starting, downloaded, uploaded, failed")
    ready: bool = Field(..., description="True once the audio is durably stored")
    error: str | None = Field(default=None, description="Failure cause when phase is failed")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last transition timestamp (UTC)")


class PendingStatusResponse(BaseModel):
    """Synthetic status for filenames with no job row."""

    model_config = ConfigDict(extra="forbid")

    phase: str = Field(default="pending", description="Always 'pending'")


class LibraryEntryResponse(BaseModel):
    """A durably stored, playable item."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    filename: str = Field(..., description="Library key (same as the job filename)")
    source_url: str = Field(..., description="Original reference")
    title: str = Field(..., description="Extracted title, or the filename when none was found")
    duration_sec: float | None = Field(default=None, description="Duration in seconds, if known")
    content_type: str = Field(..., description="MIME type of the stored audio")
    size_bytes: int | None = Field(default=None, description="Stored object size")
    content_hash: str | None = Field(default=None, description="SHA256 hex of the stored bytes")
    ready: bool = Field(..., description="True once bytes are confirmed stored")
    created_at: datetime = Field(..., description="First insert timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last update timestamp (UTC)")


class ErrorResponse(BaseModel):
    """Error body for every non-2xx API response."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Machine-readable error code")
    error_message: str = Field(..., description="Human-readable error message")
