"""Tests for FilesystemBlobStore."""

from __future__ import annotations

from pathlib import Path

import pytest

from mail_ingestor.core.exceptions import StorageError
from mail_ingestor.storage.blobs import FilesystemBlobStore


@pytest.fixture
def store(tmp_path: Path) -> FilesystemBlobStore:
    return FilesystemBlobStore(tmp_path / "blobs")


class TestFilesystemBlobStore:
    def test_put_returns_key_and_writes_file(self, store: FilesystemBlobStore, tmp_path: Path) -> None:
        key = store.put("messages/a1/2024/01/m1.eml", b"raw bytes")

        assert key == "messages/a1/2024/01/m1.eml"
        assert (tmp_path / "blobs" / "messages" / "a1" / "2024" / "01" / "m1.eml").read_bytes() == b"raw bytes"
        assert store.get(key) == b"raw bytes"
        assert store.exists(key)

    def test_put_overwrites(self, store: FilesystemBlobStore) -> None:
        store.put("k", b"one")
        store.put("k", b"two")
        assert store.get("k") == b"two"

    def test_no_temp_files_left(self, store: FilesystemBlobStore, tmp_path: Path) -> None:
        store.put("dir/k", b"data")
        assert [p.name for p in (tmp_path / "blobs" / "dir").iterdir()] == ["k"]

    def test_get_missing(self, store: FilesystemBlobStore) -> None:
        with pytest.raises(StorageError, match="not found"):
            store.get("nope")

    def test_delete(self, store: FilesystemBlobStore) -> None:
        store.put("k", b"data")
        store.delete("k")
        store.delete("k")
        assert not store.exists("k")

    @pytest.mark.parametrize("key", ["../escape", "/etc/passwd", "a/../../b", ""])
    def test_rejects_unsafe_keys(self, store: FilesystemBlobStore, key: str) -> None:
        with pytest.raises(StorageError, match="Invalid blob key"):
            store.put(key, b"x")
