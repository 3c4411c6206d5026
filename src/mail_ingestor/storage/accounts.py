"""Account repository: provisioning, status transitions, sync cursor."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from mail_ingestor.core.exceptions import StorageError
from mail_ingestor.core.models import ACCOUNT_STATUSES, Account
from mail_ingestor.storage.database import Database, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

# Statuses from which the scheduler may start a sync
SCHEDULABLE_STATUSES = ("active",)


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        provider=row["provider"],
        address=row["address"],
        status=row["status"],
        sync_cursor=row["sync_cursor"],
        last_sync_at=from_iso(row["last_sync_at"]),
        last_sync_error=row["last_sync_error"],
        display_name=row["display_name"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


class AccountRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def register_account(
        self,
        provider: str,
        address: str,
        *,
        display_name: str = "",
        account_id: str | None = None,
    ) -> Account:
        """Create an active account, or return the existing one for (provider, address)."""
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE provider = ? AND address = ?",
                (provider, address),
            ).fetchone()
            if row:
                return _row_to_account(row)
            new_id = account_id or uuid.uuid4().hex
            conn.execute(
                """INSERT INTO accounts
                   (id, provider, address, display_name, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'active', ?, ?)""",
                (new_id, provider, address, display_name, now, now),
            )
        logger.info("Registered %s account %s (%s)", provider, new_id, address)
        account = self.get(new_id)
        if account is None:
            raise StorageError(f"Account {new_id} vanished after insert")
        return account

    def get(self, account_id: str) -> Account | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return _row_to_account(row) if row else None

    def list(self, status: str | None = None) -> list[Account]:
        with self._db.read() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM accounts WHERE status = ? ORDER BY created_at", (status,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM accounts ORDER BY created_at").fetchall()
        return [_row_to_account(row) for row in rows]

    def list_due_for_sync(self, now: datetime, interval: timedelta) -> list[Account]:
        """Active accounts never synced or last synced before ``now - interval``
        that have no pending or running job."""
        threshold = to_iso(now - interval)
        placeholders = ", ".join("?" for _ in SCHEDULABLE_STATUSES)
        with self._db.read() as conn:
            rows = conn.execute(
                f"""SELECT a.* FROM accounts a
                    WHERE a.status IN ({placeholders})
                      AND (a.last_sync_at IS NULL OR a.last_sync_at < ?)
                      AND NOT EXISTS (
                          SELECT 1 FROM sync_jobs j
                          WHERE j.account_id = a.id AND j.state IN ('pending', 'running')
                      )
                    ORDER BY a.last_sync_at IS NOT NULL, a.last_sync_at""",
                (*SCHEDULABLE_STATUSES, threshold),
            ).fetchall()
        return [_row_to_account(row) for row in rows]

    def set_status(
        self, account_id: str, status: str, *, error: str | None = None
    ) -> None:
        """Set account status; ``error`` replaces last_sync_error when given."""
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"Invalid account status: {status}")
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            if error is None:
                conn.execute(
                    "UPDATE accounts SET status = ?, updated_at = ? WHERE id = ?",
                    (status, now, account_id),
                )
            else:
                conn.execute(
                    """UPDATE accounts SET status = ?, last_sync_error = ?, updated_at = ?
                       WHERE id = ?""",
                    (status, error, now, account_id),
                )

    def record_sync_success(
        self, account_id: str, cursor: str | None, synced_at: datetime
    ) -> None:
        """Persist the advanced cursor and clear the last error."""
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            conn.execute(
                """UPDATE accounts SET status = 'active', sync_cursor = ?, last_sync_at = ?,
                   last_sync_error = NULL, updated_at = ? WHERE id = ?""",
                (cursor, to_iso(synced_at), now, account_id),
            )

    def update_cursor(self, account_id: str, cursor: str | None) -> None:
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET sync_cursor = ?, updated_at = ? WHERE id = ?",
                (cursor, now, account_id),
            )

    def count_by_status(self) -> dict[str, int]:
        """Get count of accounts grouped by status."""
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) as cnt FROM accounts GROUP BY status"
            ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}
