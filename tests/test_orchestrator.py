"""Tests for app.orchestrator (run_conversion pipeline and phase handling)."""

import hashlib
from pathlib import Path
from unittest.mock import patch

from app.blob_store import BlobInfo, BlobStoreError
from app.ledger import JobPhase, create_job, get_job, transition_phase
from app.library import get_library_entry
from app.orchestrator import run_conversion

SOURCE_URL = "https://example.com/watch?v=xyz"
FILENAME = "yt-1718000000000-abcdef.mp3"


def _create_job(SessionFactory, filename=FILENAME):
    session = SessionFactory()
    try:
        create_job(session, filename, SOURCE_URL)
        session.commit()
    finally:
        session.close()


def _load(SessionFactory, filename=FILENAME):
    session = SessionFactory()
    try:
        return get_job(session, filename), get_library_entry(session, filename)
    finally:
        session.close()


class FailingBlobStore:
    """Blob store whose uploads always fail."""

    def put_file(self, key, source_path, content_type):
        raise BlobStoreError("disk full")


class LyingBlobStore:
    """Blob store that confirms a different object than it was given."""

    def put_file(self, key, source_path, content_type):
        return BlobInfo(key=key, size_bytes=1, content_hash="0" * 64, content_type=content_type)


class RecordingBlobStore:
    """Wraps a real store and records the job phase seen during the upload."""

    def __init__(self, inner, SessionFactory):
        self.inner = inner
        self.SessionFactory = SessionFactory
        self.phase_during_upload = None
        self.temp_existed_during_upload = None

    def put_file(self, key, source_path, content_type):
        job, _ = _load(self.SessionFactory, key)
        self.phase_during_upload = job.phase
        self.temp_existed_during_upload = Path(source_path).exists()
        return self.inner.put_file(key, source_path, content_type)


class TestRunConversionSuccess:
    """Tests for the happy path."""

    def test_full_success(self, temp_db, data_dirs, fake_executor):
        """Job ends uploaded with a ready library entry and identical stored bytes."""
        _, _, SessionFactory = temp_db
        temp_audio_dir, blob_store = data_dirs
        _create_job(SessionFactory)
        executor = fake_executor()

        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "ok"
        assert result["phase"] == JobPhase.UPLOADED

        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.UPLOADED
        assert job.error_message is None
        assert entry is not None
        assert entry.ready is True
        assert entry.title == "Test Title"
        assert entry.duration_sec == 12.5
        assert entry.content_type == "audio/mpeg"
        assert entry.size_bytes == len(executor.content)
        assert entry.content_hash == hashlib.sha256(executor.content).hexdigest()

        assert b"".join(blob_store.open_stream(FILENAME)) == executor.content
        # Transient copy removed after durable confirmation
        assert not (temp_audio_dir / FILENAME).exists()

    def test_executor_receives_source_and_temp_path(self, temp_db, data_dirs, fake_executor):
        _, _, SessionFactory = temp_db
        temp_audio_dir, blob_store = data_dirs
        _create_job(SessionFactory)
        executor = fake_executor()

        run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert executor.calls == [(SOURCE_URL, temp_audio_dir / FILENAME)]

    def test_upload_happens_in_downloaded_phase(self, temp_db, data_dirs, fake_executor):
        """The job is downloaded, with the transient file present, while uploading."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)
        recording = RecordingBlobStore(blob_store, SessionFactory)

        run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=fake_executor(),
            blob_store=recording,
        )

        assert recording.phase_during_upload == JobPhase.DOWNLOADED
        assert recording.temp_existed_during_upload is True

    def test_missing_metadata_falls_back_to_filename(self, temp_db, data_dirs, fake_executor):
        """Metadata failure never fails the job; title falls back to filename."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        result = run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=fake_executor(metadata_error="extractor broke"),
            blob_store=blob_store,
        )

        assert result["status"] == "ok"
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.UPLOADED
        assert entry.title == FILENAME
        assert entry.duration_sec is None

    def test_temp_removal_failure_does_not_fail_job(self, temp_db, data_dirs, fake_executor):
        """A failing unlink is logged only."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        with patch("pathlib.Path.unlink", side_effect=PermissionError("busy")):
            result = run_conversion(
                FILENAME,
                session_factory=SessionFactory,
                executor=fake_executor(),
                blob_store=blob_store,
            )

        assert result["status"] == "ok"
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.UPLOADED
        assert entry.ready is True


class TestRunConversionFailure:
    """Tests for failures at each stage."""

    def test_executor_failure(self, temp_db, data_dirs, fake_executor):
        """Executor failure fails the job and creates no library entry."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        result = run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=fake_executor(error_code="FETCH_FAILED"),
            blob_store=blob_store,
        )

        assert result["status"] == "error"
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message == "FETCH_FAILED: simulated failure"
        assert entry is None
        assert not blob_store.exists(FILENAME)

    def test_storage_failure(self, temp_db, data_dirs, fake_executor):
        """Upload failure fails the job after downloaded and keeps the temp file."""
        _, _, SessionFactory = temp_db
        temp_audio_dir, _ = data_dirs
        _create_job(SessionFactory)

        result = run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=fake_executor(),
            blob_store=FailingBlobStore(),
        )

        assert result["status"] == "error"
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message.startswith("STORAGE_FAILED:")
        assert "disk full" in job.error_message
        assert entry is None
        assert (temp_audio_dir / FILENAME).exists()

    def test_storage_mismatch(self, temp_db, data_dirs, fake_executor):
        """A store confirming different bytes is a storage failure."""
        _, _, SessionFactory = temp_db
        _create_job(SessionFactory)

        run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=fake_executor(),
            blob_store=LyingBlobStore(),
        )

        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message.startswith("STORAGE_FAILED:")
        assert "mismatch" in job.error_message
        assert entry is None

    def test_executor_claims_success_without_file(self, temp_db, data_dirs):
        """ok=True with no file on disk is OUTPUT_MISSING."""
        from services.worker_convert.run import ConvertResult

        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=lambda url, dest: ConvertResult(ok=True, local_path=str(dest)),
            blob_store=blob_store,
        )

        job, _ = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message.startswith("OUTPUT_MISSING:")

    def test_executor_exception_is_recorded(self, temp_db, data_dirs):
        """An executor that raises never escapes run_conversion."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        def exploding_executor(url, dest):
            raise RuntimeError("segfault-ish")

        result = run_conversion(
            FILENAME,
            session_factory=SessionFactory,
            executor=exploding_executor,
            blob_store=blob_store,
        )

        assert result["status"] == "error"
        job, _ = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message.startswith("WORKER_ERROR:")
        assert "segfault-ish" in job.error_message


class TestRunConversionIdempotency:
    """Tests for redelivered or stray tasks."""

    def test_unknown_job_is_skipped(self, temp_db, data_dirs, fake_executor):
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        executor = fake_executor()

        result = run_conversion(
            "ghost.mp3", session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "skipped"
        assert executor.calls == []

    def test_failed_job_is_skipped(self, temp_db, data_dirs, fake_executor):
        """A redelivered task for a terminal job changes nothing."""
        from app.ledger import mark_failed

        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)
        session = SessionFactory()
        try:
            mark_failed(session, FILENAME, "FETCH_FAILED: gone")
            session.commit()
        finally:
            session.close()
        executor = fake_executor()

        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "skipped"
        assert executor.calls == []
        job, _ = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message == "FETCH_FAILED: gone"

    def test_redelivered_downloaded_job_resumes_upload(self, temp_db, data_dirs, fake_executor):
        """A worker that died after downloading leaves a job the next delivery finishes."""
        _, _, SessionFactory = temp_db
        temp_audio_dir, blob_store = data_dirs
        _create_job(SessionFactory)
        session = SessionFactory()
        try:
            transition_phase(session, FILENAME, JobPhase.DOWNLOADED)
            session.commit()
        finally:
            session.close()
        content = b"ID3 audio left by the dead worker"
        (temp_audio_dir / FILENAME).write_bytes(content)
        executor = fake_executor()

        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "ok"
        assert result["resumed"] is True
        assert executor.calls == []
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.UPLOADED
        assert entry.ready is True
        assert entry.title == FILENAME
        assert entry.size_bytes == len(content)
        assert b"".join(blob_store.open_stream(FILENAME)) == content
        assert not (temp_audio_dir / FILENAME).exists()

    def test_redelivered_downloaded_job_without_file_fails(
        self, temp_db, data_dirs, fake_executor
    ):
        """With the transient file gone, the job is failed instead of left downloaded."""
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)
        session = SessionFactory()
        try:
            transition_phase(session, FILENAME, JobPhase.DOWNLOADED)
            session.commit()
        finally:
            session.close()
        executor = fake_executor()

        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "error"
        assert executor.calls == []
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message.startswith("INTERRUPTED:")
        assert entry is None
        assert not blob_store.exists(FILENAME)

    def test_second_run_after_success_is_noop(self, temp_db, data_dirs, fake_executor):
        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)

        first = fake_executor()
        run_conversion(
            FILENAME, session_factory=SessionFactory, executor=first, blob_store=blob_store
        )
        second = fake_executor(content=b"different")
        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=second, blob_store=blob_store
        )

        assert result["status"] == "skipped"
        assert second.calls == []
        assert b"".join(blob_store.open_stream(FILENAME)) == first.content

    def test_job_failed_during_conversion_stays_failed(self, temp_db, data_dirs, fake_executor):
        """If recovery fails the job mid-conversion, the pipeline does not revive it."""
        from app.ledger import mark_failed

        _, _, SessionFactory = temp_db
        _, blob_store = data_dirs
        _create_job(SessionFactory)
        inner = fake_executor()

        def executor(url, dest):
            result = inner(url, dest)
            session = SessionFactory()
            try:
                mark_failed(session, FILENAME, "INTERRUPTED: recovered")
                session.commit()
            finally:
                session.close()
            return result

        result = run_conversion(
            FILENAME, session_factory=SessionFactory, executor=executor, blob_store=blob_store
        )

        assert result["status"] == "skipped"
        job, entry = _load(SessionFactory)
        assert job.phase == JobPhase.FAILED
        assert job.error_message == "INTERRUPTED: recovered"
        assert entry is None
