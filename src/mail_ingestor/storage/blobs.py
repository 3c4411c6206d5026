"""Blob storage for raw messages and attachment payloads."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

from mail_ingestor.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...


class FilesystemBlobStore:
    """Store blobs as files under a root directory, one file per key.

    Keys are relative POSIX paths. Writes go through a temporary file and an
    atomic rename, so a reader never sees a partially written blob and
    re-putting the same key is harmless.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts:
            raise StorageError(f"Invalid blob key: {key!r}")
        return self._root.joinpath(*parts)

    def put(self, key: str, data: bytes) -> str:
        """Save ``data`` under ``key``.

        Returns:
            The key, for use as a storage pointer.

        Raises:
            StorageError: If the blob could not be written.
        """
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StorageError(f"Failed to write blob {key}: {e}") from e
        logger.debug("Saved blob: %s (%d bytes)", key, len(data))
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"Blob not found: {key}") from None
        except OSError as e:
            raise StorageError(f"Failed to read blob {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete blob {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()
