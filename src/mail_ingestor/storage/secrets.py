"""Credential secret storage."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from mail_ingestor.core.exceptions import StorageError
from mail_ingestor.core.models import AccountCredentials

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class SecretStore(Protocol):
    def read(self, account_id: str) -> AccountCredentials | None: ...

    def write(self, account_id: str, credentials: AccountCredentials) -> None: ...


class JsonFileSecretStore:
    """One JSON credential document per account, written with mode 0600."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, account_id: str) -> Path:
        return self._root / f"{_SAFE_NAME.sub('_', account_id)}.json"

    def read(self, account_id: str) -> AccountCredentials | None:
        """Return the stored credentials, or None if the account has none."""
        path = self._path(account_id)
        with self._lock:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return None
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Failed to read credentials for {account_id}: {e}") from e
        return AccountCredentials.from_dict(data)

    def write(self, account_id: str, credentials: AccountCredentials) -> None:
        path = self._path(account_id)
        payload = json.dumps(credentials.to_dict(), indent=2)
        with self._lock:
            try:
                fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
                with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                    tmp.write(payload)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except OSError as e:
                raise StorageError(f"Failed to write credentials for {account_id}: {e}") from e
        logger.debug("Stored credentials v%d for %s", credentials.version, account_id)

    def delete(self, account_id: str) -> None:
        with self._lock:
            self._path(account_id).unlink(missing_ok=True)
