"""Shared pytest fixtures for Audio Fetch Pipeline tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.blob_store import LocalBlobStore, override_blob_store
from app.db import init_db
from services.convert_api.main import app, get_db_session, override_session_factory
from services.worker_convert.run import ConvertMetadata, ConvertResult

# Bytes standing in for a converted MP3 (content is never decoded)
FAKE_MP3_BYTES = b"ID3\x04\x00\x00\x00\x00\x00\x00" + bytes(range(256)) * 40


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def data_dirs(monkeypatch):
    """Point transient storage and the blob store at a temporary directory.

    Yields:
        tuple: (temp_audio_dir, blob_store)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        temp_audio_dir = Path(tmpdir) / "tmp"
        blob_dir = Path(tmpdir) / "blobs"
        temp_audio_dir.mkdir()
        blob_dir.mkdir()

        monkeypatch.setattr("app.config.TEMP_AUDIO_DIR", temp_audio_dir)
        monkeypatch.setattr("app.config.BLOB_DIR", blob_dir)
        monkeypatch.setattr("app.utils.paths.TEMP_AUDIO_DIR", temp_audio_dir)

        blob_store = LocalBlobStore(blob_dir)
        override_blob_store(blob_store)

        yield temp_audio_dir, blob_store

        override_blob_store(None)


@pytest.fixture
def mock_enqueue():
    """Replace task dispatch so no broker is touched."""
    with patch("app.celery_app.enqueue_conversion") as mock:
        yield mock


@pytest.fixture
def client(temp_db, data_dirs, mock_enqueue, monkeypatch):
    """Create a FastAPI test client with temp database and storage.

    Overrides the database dependency to use the temporary test database.
    The dependency override is cleared after the test completes.

    Args:
        temp_db: Temporary database fixture.
        data_dirs: Temporary storage fixture.
        mock_enqueue: Dispatch mock (creation never reaches a broker).

    Yields:
        tuple: (test_client, SessionFactory)
    """
    db_path, engine, SessionFactory = temp_db

    # Lifespan init_db() must not touch the real database
    monkeypatch.setattr("app.db.DB_PATH", db_path)

    # Override the dependency
    def get_test_session():
        session = SessionFactory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = get_test_session

    with TestClient(app) as client:
        yield client, SessionFactory

    # Clean up dependency overrides
    app.dependency_overrides.clear()


@pytest.fixture
def fake_executor():
    """Factory for stand-in conversion executors.

    The returned executor records its calls in `.calls` and, on success,
    writes `content` to the destination path like the real worker.
    """

    def _factory(
        content: bytes = FAKE_MP3_BYTES,
        title: str | None = "Test Title",
        duration_sec: float | None = 12.5,
        error_code: str | None = None,
        metadata_error: str | None = None,
    ):
        calls = []

        def executor(source_url, destination_path):
            calls.append((source_url, Path(destination_path)))
            if error_code is not None:
                return ConvertResult(ok=False, error_code=error_code, message="simulated failure")

            Path(destination_path).write_bytes(content)
            metadata = None
            if metadata_error is None:
                metadata = ConvertMetadata(title=title, duration_sec=duration_sec)
            return ConvertResult(
                ok=True,
                local_path=str(destination_path),
                metadata=metadata,
                metadata_error=metadata_error,
            )

        executor.calls = calls
        executor.content = content
        return executor

    return _factory
