"""Message store: deduplication, thread resolution, metadata and blob persistence."""

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
import uuid
from datetime import datetime
from email.utils import getaddresses

from mail_ingestor.core.exceptions import StorageError
from mail_ingestor.core.models import (
    Attachment,
    FetchedAttachment,
    FetchedMessage,
    MessageFlags,
    StoredMessage,
    Thread,
)
from mail_ingestor.storage.blobs import BlobStore
from mail_ingestor.storage.database import (
    Database,
    from_iso,
    from_json,
    to_iso,
    to_json,
    utcnow,
)

logger = logging.getLogger(__name__)

# Any run of leading "Re:", "Fw:", "Fwd:" (optionally "Re[2]:") prefixes
_REPLY_PREFIXES = re.compile(r"^(\s*(re|fwd?)\s*(\[\d+\])?\s*:)+", re.IGNORECASE)
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_HTML_TAGS = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")

MAX_SUBJECT_LENGTH = 255
PREVIEW_LENGTH = 200


def normalize_subject(subject: str) -> str:
    """Strip reply/forward prefixes, trim, and fold case."""
    stripped = _REPLY_PREFIXES.sub("", subject or "")
    return stripped.strip().casefold()[:MAX_SUBJECT_LENGTH]


def sanitize_key_part(value: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", value) or "_"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _participants(message: FetchedMessage) -> set[str]:
    senders = [addr for _, addr in getaddresses([message.sender]) if addr]
    return {addr.lower() for addr in (*senders, *message.to, *message.cc)}


def _preview(message: FetchedMessage) -> str:
    text = message.body.plain_text
    if not text and message.body.html:
        text = _HTML_TAGS.sub(" ", message.body.html)
    return _WHITESPACE.sub(" ", text or "").strip()[:PREVIEW_LENGTH]


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        account_id=row["account_id"],
        provider_message_id=row["provider_message_id"],
        thread_id=row["thread_id"],
        blob_key=row["blob_key"],
        size=row["size"],
        folder=row["folder"],
        flags=MessageFlags(
            read=bool(row["is_read"]),
            starred=bool(row["is_starred"]),
            spam=bool(row["is_spam"]),
        ),
        message_id_header=row["message_id_header"],
        subject=row["subject"],
        sender=row["sender"],
        to=tuple(from_json(row["to_addresses"], [])),
        cc=tuple(from_json(row["cc_addresses"], [])),
        date=from_iso(row["date"]),
        in_reply_to=row["in_reply_to"],
        references=tuple(from_json(row["references_ids"], [])),
        labels=tuple(from_json(row["labels"], [])),
        headers=from_json(row["headers"], {}),
        has_attachments=bool(row["has_attachments"]),
        body_preview=row["body_preview"],
        created_at=from_iso(row["created_at"]),
    )


def _row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        normalized_subject=row["normalized_subject"],
        participants=tuple(from_json(row["participants"], [])),
        message_count=row["message_count"],
        first_message_at=from_iso(row["first_message_at"]),
        last_message_at=from_iso(row["last_message_at"]),
    )


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        message_id=row["message_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        size=row["size"],
        blob_key=row["blob_key"],
        checksum=row["checksum"],
        created_at=from_iso(row["created_at"]),
    )


class MessageStore:
    """Deduplicates, threads and persists fetched messages.

    The dedup key is (account_id, provider_message_id). Raw content and
    attachments are written to the blob store under keys derived from that
    key, so a retried store after a partial failure overwrites the same blobs
    instead of leaving orphans behind.
    """

    def __init__(self, db: Database, blobs: BlobStore) -> None:
        self._db = db
        self._blobs = blobs

    def store(self, account_id: str, message: FetchedMessage) -> tuple[StoredMessage, bool]:
        """Persist a fetched message unless it is already stored.

        Args:
            account_id: Owning account.
            message: Normalized message from a provider adapter.

        Returns:
            (stored message, created). ``created`` is False on a dedup hit.

        Raises:
            StorageError: If the blob store or database write failed.
        """
        existing = self.get_by_provider_id(account_id, message.provider_message_id)
        if existing:
            logger.debug(
                "Duplicate message %s for %s, skipping",
                message.provider_message_id, account_id,
            )
            return existing, False

        date = message.date or utcnow()
        blob_key = self._blobs.put(self._message_key(account_id, message), message.raw)
        attachment_blobs = [
            (attachment, self._store_attachment(account_id, message, index, attachment))
            for index, attachment in enumerate(message.attachments)
        ]

        message_id = uuid.uuid4().hex
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            # Another worker may have won the race since the first check
            row = conn.execute(
                "SELECT * FROM messages WHERE account_id = ? AND provider_message_id = ?",
                (account_id, message.provider_message_id),
            ).fetchone()
            if row:
                return _row_to_message(row), False

            thread_id = self._resolve_thread(conn, message)
            conn.execute(
                """INSERT INTO messages (
                       id, account_id, provider_message_id, thread_id, blob_key, size,
                       folder, is_read, is_starred, is_spam, message_id_header, subject,
                       sender, to_addresses, cc_addresses, date, in_reply_to,
                       references_ids, labels, headers, has_attachments, body_preview,
                       created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message_id, account_id, message.provider_message_id, thread_id,
                    blob_key, message.size, message.folder,
                    int(message.flags.read), int(message.flags.starred),
                    int(message.flags.spam), message.message_id_header, message.subject,
                    message.sender, to_json(list(message.to)), to_json(list(message.cc)),
                    to_iso(date), message.in_reply_to, to_json(list(message.references)),
                    to_json(list(message.labels)), to_json(message.headers),
                    int(bool(message.attachments)), _preview(message), now, now,
                ),
            )
            self._add_to_thread(conn, thread_id, _participants(message), date)
            conn.executemany(
                """INSERT INTO attachments
                   (id, message_id, filename, content_type, size, blob_key, checksum, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        uuid.uuid4().hex, message_id, attachment.filename,
                        attachment.content_type, attachment.size, key, checksum, now,
                    )
                    for attachment, (key, checksum) in attachment_blobs
                ],
            )

        logger.info(
            "Stored message %s for %s in thread %s",
            message.provider_message_id, account_id, thread_id,
        )
        stored = self.get(message_id)
        if stored is None:
            raise StorageError(f"Message {message_id} vanished after insert")
        return stored, True

    def _message_key(self, account_id: str, message: FetchedMessage) -> str:
        period = message.date.strftime("%Y/%m") if message.date else "undated"
        return (
            f"messages/{sanitize_key_part(account_id)}/{period}/"
            f"{sanitize_key_part(message.provider_message_id)}.eml"
        )

    def _store_attachment(
        self,
        account_id: str,
        message: FetchedMessage,
        index: int,
        attachment: FetchedAttachment,
    ) -> tuple[str, str]:
        checksum = sha256_hex(attachment.content)
        key = (
            f"attachments/{sanitize_key_part(account_id)}/"
            f"{sanitize_key_part(message.provider_message_id)}/"
            f"{index}_{sanitize_key_part(attachment.filename)}"
        )
        return self._blobs.put(key, attachment.content), checksum

    def _resolve_thread(self, conn: sqlite3.Connection, message: FetchedMessage) -> str:
        """Find the thread for a message, creating one if nothing matches.

        Replies follow their parent's thread when the parent is stored;
        otherwise the most recently active thread with the same normalized
        subject wins. Unrelated conversations that share a generic subject
        can merge; that is an accepted limitation of the heuristic.
        """
        if message.in_reply_to:
            row = conn.execute(
                "SELECT thread_id FROM messages WHERE message_id_header = ? LIMIT 1",
                (message.in_reply_to,),
            ).fetchone()
            if row:
                return row["thread_id"]

        subject = normalize_subject(message.subject)
        if subject:
            row = conn.execute(
                """SELECT id FROM threads WHERE normalized_subject = ?
                   ORDER BY last_message_at DESC LIMIT 1""",
                (subject,),
            ).fetchone()
            if row:
                return row["id"]

        thread_id = uuid.uuid4().hex
        now = to_iso(utcnow())
        conn.execute(
            """INSERT INTO threads
               (id, normalized_subject, participants, message_count, created_at, updated_at)
               VALUES (?, ?, '[]', 0, ?, ?)""",
            (thread_id, subject, now, now),
        )
        logger.debug("Created thread %s for subject %r", thread_id, subject)
        return thread_id

    @staticmethod
    def _add_to_thread(
        conn: sqlite3.Connection, thread_id: str, participants: set[str], date: datetime
    ) -> None:
        row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        merged = sorted(set(from_json(row["participants"], [])) | participants)
        first = from_iso(row["first_message_at"])
        last = from_iso(row["last_message_at"])
        conn.execute(
            """UPDATE threads SET message_count = message_count + 1, participants = ?,
               first_message_at = ?, last_message_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                to_json(merged),
                to_iso(min(first, date) if first else date),
                to_iso(max(last, date) if last else date),
                to_iso(utcnow()),
                thread_id,
            ),
        )

    def get(self, message_id: str) -> StoredMessage | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return _row_to_message(row) if row else None

    def get_by_provider_id(
        self, account_id: str, provider_message_id: str
    ) -> StoredMessage | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE account_id = ? AND provider_message_id = ?",
                (account_id, provider_message_id),
            ).fetchone()
        return _row_to_message(row) if row else None

    def thread(self, thread_id: str) -> Thread | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return _row_to_thread(row) if row else None

    def thread_messages(self, thread_id: str) -> list[StoredMessage]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE thread_id = ? ORDER BY date", (thread_id,)
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def attachments(self, message_id: str) -> list[Attachment]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? ORDER BY blob_key",
                (message_id,),
            ).fetchall()
        return [_row_to_attachment(row) for row in rows]

    def verify_attachment(self, attachment: Attachment) -> bool:
        """Recompute the checksum of the stored attachment blob."""
        return sha256_hex(self._blobs.get(attachment.blob_key)) == attachment.checksum

    def read_raw(self, message: StoredMessage) -> bytes:
        return self._blobs.get(message.blob_key)

    def update_flags(
        self,
        message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
        spam: bool | None = None,
    ) -> StoredMessage | None:
        """Update the locally stored flags; None leaves a flag unchanged."""
        sets: list[str] = []
        params: list[object] = []
        for column, value in (("is_read", read), ("is_starred", starred), ("is_spam", spam)):
            if value is not None:
                sets.append(f"{column} = ?")
                params.append(int(value))
        if sets:
            sets.append("updated_at = ?")
            params.extend([to_iso(utcnow()), message_id])
            with self._db.transaction() as conn:
                conn.execute(f"UPDATE messages SET {', '.join(sets)} WHERE id = ?", params)
        return self.get(message_id)

    def update_folder(self, message_id: str, folder: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE messages SET folder = ?, updated_at = ? WHERE id = ?",
                (folder, to_iso(utcnow()), message_id),
            )

    def count_for_account(self, account_id: str) -> int:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM messages WHERE account_id = ?", (account_id,)
            ).fetchone()
        return row["cnt"]

    def count(self) -> int:
        with self._db.read() as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM messages").fetchone()
        return row["cnt"]
