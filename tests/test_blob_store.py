"""Tests for app.blob_store (LocalBlobStore)."""

import hashlib
import tempfile
from pathlib import Path

import pytest

from app.blob_store import (
    BlobNotFoundError,
    BlobStoreError,
    LocalBlobStore,
    get_blob_store,
    override_blob_store,
)


@pytest.fixture
def store_and_source():
    """A LocalBlobStore in a temp dir plus a source file to upload."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir) / "blobs"
        source = Path(tmpdir) / "source.mp3"
        source.write_bytes(b"audio bytes " * 5000)
        yield LocalBlobStore(root), source


class TestPutFile:
    """Tests for LocalBlobStore.put_file."""

    def test_put_returns_confirmed_info(self, store_and_source):
        """The returned info describes exactly the stored bytes."""
        store, source = store_and_source
        data = source.read_bytes()

        info = store.put_file("yt-1-aaaaaa.mp3", source, "audio/mpeg")

        assert info.key == "yt-1-aaaaaa.mp3"
        assert info.size_bytes == len(data)
        assert info.content_hash == hashlib.sha256(data).hexdigest()
        assert info.content_type == "audio/mpeg"
        assert (store.root / "yt-1-aaaaaa.mp3").read_bytes() == data

    def test_put_leaves_no_temp_files(self, store_and_source):
        """Only the content and its sidecar remain after a put."""
        store, source = store_and_source
        store.put_file("yt-1-aaaaaa.mp3", source, "audio/mpeg")

        names = sorted(p.name for p in store.root.iterdir())
        assert names == ["yt-1-aaaaaa.mp3", "yt-1-aaaaaa.mp3.meta.json"]

    def test_put_replaces_existing_object(self, store_and_source):
        """A second put under the same key replaces the bytes."""
        store, source = store_and_source
        store.put_file("k.mp3", source, "audio/mpeg")

        source.write_bytes(b"new")
        info = store.put_file("k.mp3", source, "audio/mpeg")

        assert info.size_bytes == 3
        assert store.stat("k.mp3").size_bytes == 3

    def test_put_missing_source_raises_store_error(self, store_and_source):
        """A missing source file surfaces as BlobStoreError."""
        store, source = store_and_source
        with pytest.raises(BlobStoreError):
            store.put_file("k.mp3", source.with_name("missing.mp3"), "audio/mpeg")
        assert not store.exists("k.mp3")

    @pytest.mark.parametrize("key", ["../escape.mp3", "a/b.mp3", ".hidden", ""])
    def test_put_rejects_unsafe_keys(self, store_and_source, key):
        store, source = store_and_source
        with pytest.raises(BlobStoreError):
            store.put_file(key, source, "audio/mpeg")


class TestReadPath:
    """Tests for exists, stat and open_stream."""

    def test_exists_requires_content_and_sidecar(self, store_and_source):
        """Content without its sidecar is not reported as stored."""
        store, source = store_and_source
        store.root.mkdir(parents=True)
        (store.root / "partial.mp3").write_bytes(b"x")

        assert store.exists("partial.mp3") is False
        with pytest.raises(BlobNotFoundError):
            store.open_stream("partial.mp3")

    def test_stat_missing_raises_not_found(self, store_and_source):
        store, _ = store_and_source
        with pytest.raises(BlobNotFoundError):
            store.stat("missing.mp3")

    def test_open_stream_yields_all_bytes(self, store_and_source):
        """Chunks concatenate to the stored bytes."""
        store, source = store_and_source
        store.put_file("k.mp3", source, "audio/mpeg")

        chunks = list(store.open_stream("k.mp3", chunk_size=1000))

        assert len(chunks) > 1
        assert b"".join(chunks) == source.read_bytes()

    def test_open_stream_missing_raises_immediately(self, store_and_source):
        """Absence is reported when opening, not while iterating."""
        store, _ = store_and_source
        with pytest.raises(BlobNotFoundError):
            store.open_stream("missing.mp3")

    def test_unsafe_key_is_not_found(self, store_and_source):
        store, _ = store_and_source
        assert store.exists("../etc/passwd") is False
        with pytest.raises(BlobNotFoundError):
            store.open_stream("../etc/passwd")


class TestProcessDefault:
    """Tests for get_blob_store / override_blob_store."""

    def test_override_and_restore(self, store_and_source):
        store, _ = store_and_source
        override_blob_store(store)
        try:
            assert get_blob_store() is store
        finally:
            override_blob_store(None)
        assert isinstance(get_blob_store(), LocalBlobStore)
        assert get_blob_store() is not store
        override_blob_store(None)
