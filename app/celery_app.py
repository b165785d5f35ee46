"""Audio Fetch Pipeline - Celery task queue configuration.

Celery with the kombu SQLAlchemy transport on a local SQLite file, so the
pipeline runs offline on a single host with no external broker. Set
AFP_BROKER_URL to point at another broker.

The worker pool is bounded (config.WORKER_CONCURRENCY) and takes one task at
a time per process; results are not stored because the job ledger already
records the outcome.

How to run:
1. Start the convert API:
   uvicorn services.convert_api.main:app --reload

2. Start a Celery worker (processes queued conversions):
   celery -A app.celery_app:celery_app worker --loglevel=INFO
"""

from __future__ import annotations

import logging
from pathlib import Path

from celery import Celery

from app.config import BROKER_URL, QUEUE_DIR, WORKER_CONCURRENCY

logger = logging.getLogger(__name__)

CONVERSION_TASK_NAME = "audio_fetch.convert"


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before the SQLite broker is first touched
_ensure_queue_dir()

celery_app = Celery("audio_fetch", broker=BROKER_URL)
celery_app.conf.update(
    worker_concurrency=WORKER_CONCURRENCY,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,
    # Redelivered tasks are harmless: the orchestrator skips jobs not in starting
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    broker_connection_retry_on_startup=True,
)


@celery_app.task(name=CONVERSION_TASK_NAME)
def conversion_task(filename: str) -> dict:
    """Celery task running the conversion pipeline for one job.

    Args:
        filename: Job filename.

    Returns:
        Dict with the pipeline result (for logging/debugging).
    """
    # Import here to avoid circular imports
    from app.orchestrator import run_conversion

    logger.info("Conversion task started for %s", filename)
    result = run_conversion(filename)
    logger.info("Conversion task completed for %s: %s", filename, result.get("status"))
    return result


def enqueue_conversion(filename: str) -> None:
    """Queue a conversion job for the worker pool.

    Raises:
        Exception: Whatever the broker raises when the task cannot be queued.
    """
    conversion_task.delay(filename)
