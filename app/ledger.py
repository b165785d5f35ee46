"""Audio Fetch Pipeline - Job ledger primitives.

The job ledger is the source of truth for polling. Each conversion attempt
owns one ConversionJob row keyed by filename.

Phase state machine:

    starting -> downloaded -> uploaded
        \\            \\
         +-> failed   +-> failed

uploaded and failed are terminal. Every transition is a single-row
conditional UPDATE (compare-and-set on the current phase), so concurrent
writers can never move a job backwards.

Note:
    Primitives in this module flush but do NOT commit. Callers own the
    transaction boundary.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from app.models import ConversionJob, utc_now

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class JobPhase(StrEnum):
    """Phases of a conversion job."""

    STARTING = "starting"
    DOWNLOADED = "downloaded"
    UPLOADED = "uploaded"
    FAILED = "failed"


# Synthetic phase reported for filenames with no ledger row
PENDING_PHASE = "pending"

TERMINAL_PHASES = frozenset({JobPhase.UPLOADED, JobPhase.FAILED})
ACTIVE_PHASES = frozenset({JobPhase.STARTING, JobPhase.DOWNLOADED})

# Target phase -> phases it may be entered from
ALLOWED_SOURCE_PHASES: dict[JobPhase, frozenset[JobPhase]] = {
    JobPhase.DOWNLOADED: frozenset({JobPhase.STARTING}),
    JobPhase.UPLOADED: frozenset({JobPhase.DOWNLOADED}),
    JobPhase.FAILED: frozenset({JobPhase.STARTING, JobPhase.DOWNLOADED}),
}


class InvalidPhaseTransition(Exception):
    """Raised when a transition is not allowed from the job's current phase."""

    def __init__(self, filename: str, current_phase: str | None, target_phase: str):
        self.filename = filename
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(
            f"INVALID_PHASE_TRANSITION: job '{filename}' cannot move from "
            f"'{current_phase}' to '{target_phase}'"
        )


def create_job(session: Session, filename: str, source_url: str) -> ConversionJob:
    """Insert a new job in phase starting.

    Args:
        session: Active database session.
        filename: Freshly generated job filename.
        source_url: Reference supplied by the requester.

    Returns:
        The created ConversionJob (flushed but not committed).
    """
    now = utc_now()
    job = ConversionJob(
        filename=filename,
        source_url=source_url,
        phase=JobPhase.STARTING,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    session.flush()
    return job


def get_job(session: Session, filename: str) -> ConversionJob | None:
    """Find a job by filename."""
    stmt = select(ConversionJob).where(ConversionJob.filename == filename)
    return session.execute(stmt).scalar_one_or_none()


def transition_phase(
    session: Session,
    filename: str,
    to_phase: JobPhase,
    error_message: str | None = None,
) -> ConversionJob:
    """Move a job to a new phase if its current phase allows it.

    Args:
        session: Active database session.
        filename: Job filename.
        to_phase: Target phase (downloaded, uploaded or failed).
        error_message: Recorded only when moving to failed.

    Returns:
        The updated ConversionJob.

    Raises:
        InvalidPhaseTransition: If the job does not exist or its current
            phase does not allow the transition.
    """
    to_phase = JobPhase(to_phase)
    allowed_from = ALLOWED_SOURCE_PHASES.get(to_phase, frozenset())

    values = {
        "phase": to_phase.value,
        "updated_at": utc_now(),
        "error_message": error_message if to_phase == JobPhase.FAILED else None,
    }
    stmt = (
        update(ConversionJob)
        .where(
            ConversionJob.filename == filename,
            ConversionJob.phase.in_([phase.value for phase in allowed_from]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)

    job = get_job(session, filename)
    if job is not None:
        # The bulk UPDATE bypassed the identity map
        session.refresh(job)

    if result.rowcount != 1:
        current = job.phase if job is not None else None
        raise InvalidPhaseTransition(filename, current, to_phase.value)

    logger.info("Job %s -> %s", filename, to_phase.value)
    return job


def mark_failed(session: Session, filename: str, error_message: str) -> ConversionJob:
    """Move a non-terminal job to failed with a recorded cause.

    Raises:
        InvalidPhaseTransition: If the job is missing or already terminal.
    """
    return transition_phase(session, filename, JobPhase.FAILED, error_message or "unknown error")


def count_active_jobs(session: Session) -> int:
    """Count jobs that are still starting or downloaded."""
    stmt = select(func.count(ConversionJob.id)).where(
        ConversionJob.phase.in_([phase.value for phase in ACTIVE_PHASES])
    )
    return session.execute(stmt).scalar_one()


def list_active_filenames(session: Session) -> set[str]:
    """Filenames of jobs that are still starting or downloaded."""
    stmt = select(ConversionJob.filename).where(
        ConversionJob.phase.in_([phase.value for phase in ACTIVE_PHASES])
    )
    return set(session.execute(stmt).scalars())


def fail_stale_jobs(session: Session, older_than_seconds: int) -> list[str]:
    """Fail non-terminal jobs that have not moved for too long.

    A job whose worker died mid-conversion would otherwise stay in
    starting/downloaded forever with no recorded cause.

    Args:
        session: Active database session.
        older_than_seconds: Minimum age of the last update.

    Returns:
        Filenames of the jobs that were failed.
    """
    cutoff = utc_now() - timedelta(seconds=older_than_seconds)
    stmt = select(ConversionJob).where(
        ConversionJob.phase.in_([phase.value for phase in ACTIVE_PHASES]),
        ConversionJob.updated_at < cutoff,
    )
    stale_jobs = session.execute(stmt).scalars().all()

    failed: list[str] = []
    for job in stale_jobs:
        message = (
            f"INTERRUPTED: no progress since {job.updated_at.isoformat()} "
            f"(phase was {job.phase})"
        )
        try:
            transition_phase(session, job.filename, JobPhase.FAILED, message)
        except InvalidPhaseTransition:
            # Finished between the select and the update
            continue
        logger.warning("Failed stale job %s: %s", job.filename, message)
        failed.append(job.filename)

    return failed
