"""Full-text search index contract and an SQLite FTS5 implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from mail_ingestor.core.exceptions import SearchIndexError

logger = logging.getLogger(__name__)

# Document fields copied into the full-text table
_TEXT_FIELDS = ("subject", "sender", "recipients", "body", "attachment_names")


class SearchIndex(Protocol):
    def upsert(self, document_id: str, document: dict[str, Any]) -> None: ...

    def delete(self, document_id: str) -> None: ...


class SqliteSearchIndex:
    """Search index in its own SQLite database using an FTS5 table.

    ``upsert`` and ``delete`` are idempotent: re-indexing a document
    replaces it, and deleting a missing document is a no-op.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        if self._conn is not None:
            return
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
                document_id UNINDEXED,
                subject, sender, recipients, body, attachment_names
            );
        """)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SqliteSearchIndex:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Search index not connected. Call connect() first.")
        return self._conn

    def upsert(self, document_id: str, document: dict[str, Any]) -> None:
        """Insert or replace a document.

        Raises:
            SearchIndexError: If the index write failed.
        """
        text = {name: self._as_text(document.get(name)) for name in _TEXT_FIELDS}
        now = datetime.now(UTC).isoformat()
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """INSERT INTO documents (document_id, account_id, body, updated_at)
                           VALUES (?, ?, ?, ?)
                           ON CONFLICT(document_id) DO UPDATE SET
                               account_id = excluded.account_id,
                               body = excluded.body,
                               updated_at = excluded.updated_at""",
                        (
                            document_id,
                            document.get("account_id", ""),
                            json.dumps(document, default=str),
                            now,
                        ),
                    )
                    self.conn.execute(
                        "DELETE FROM documents_fts WHERE document_id = ?", (document_id,)
                    )
                    self.conn.execute(
                        """INSERT INTO documents_fts
                           (document_id, subject, sender, recipients, body, attachment_names)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (document_id, *(text[name] for name in _TEXT_FIELDS)),
                    )
            except sqlite3.Error as e:
                raise SearchIndexError(f"Failed to index {document_id}: {e}") from e
        logger.debug("Indexed document %s", document_id)

    def delete(self, document_id: str) -> None:
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM documents WHERE document_id = ?", (document_id,))
                    self.conn.execute(
                        "DELETE FROM documents_fts WHERE document_id = ?", (document_id,)
                    )
            except sqlite3.Error as e:
                raise SearchIndexError(f"Failed to delete {document_id}: {e}") from e

    def get(self, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT body FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
        return json.loads(row["body"]) if row else None

    def search(
        self, query: str, *, account_id: str | None = None, limit: int = 20
    ) -> list[str]:
        """Return ids of documents matching an FTS5 query, best match first."""
        sql = """SELECT f.document_id FROM documents_fts f
                 JOIN documents d ON d.document_id = f.document_id
                 WHERE documents_fts MATCH ?"""
        params: list[Any] = [query]
        if account_id:
            sql += " AND d.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY rank LIMIT ?"
        params.append(limit)
        with self._lock:
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise SearchIndexError(f"Search failed for {query!r}: {e}") from e
        return [row["document_id"] for row in rows]

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM documents").fetchone()
        return row["cnt"]

    @staticmethod
    def _as_text(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return " ".join(str(item) for item in value)
        return str(value)
