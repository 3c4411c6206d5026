"""SyncJob repository implementing the pending → running → completed | failed machine."""

from __future__ import annotations

import logging
import sqlite3
import uuid

from mail_ingestor.core.models import JOB_TRIGGERS, SyncJob
from mail_ingestor.storage.database import Database, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

OPEN_STATES = ("pending", "running")


def _row_to_job(row: sqlite3.Row) -> SyncJob:
    return SyncJob(
        id=row["id"],
        account_id=row["account_id"],
        state=row["state"],
        attempts=row["attempts"],
        trigger=row["trigger"],
        created_at=from_iso(row["created_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        messages_synced=row["messages_synced"],
        error=row["error"],
    )


class SyncJobRepository:
    """Persists sync jobs. Transitions only succeed from the expected state."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, account_id: str, trigger: str = "scheduled") -> SyncJob:
        if trigger not in JOB_TRIGGERS:
            raise ValueError(f"Invalid job trigger: {trigger}")
        job = SyncJob(
            id=uuid.uuid4().hex,
            account_id=account_id,
            trigger=trigger,
            created_at=utcnow(),
        )
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO sync_jobs (id, account_id, state, trigger, attempts, created_at)
                   VALUES (?, ?, 'pending', ?, 0, ?)""",
                (job.id, account_id, trigger, to_iso(job.created_at)),
            )
        return job

    def create_unless_open(
        self, account_id: str, trigger: str = "scheduled"
    ) -> tuple[SyncJob, bool]:
        """Create a pending job unless the account already has an open one.

        Returns:
            (job, created) where ``job`` is the open job when one exists.
        """
        with self._db.transaction():
            existing = self.open_job_for(account_id)
            if existing:
                return existing, False
            return self.create(account_id, trigger), True

    def get(self, job_id: str) -> SyncJob | None:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def open_job_for(self, account_id: str) -> SyncJob | None:
        with self._db.read() as conn:
            row = conn.execute(
                """SELECT * FROM sync_jobs WHERE account_id = ? AND state IN ('pending', 'running')
                   ORDER BY created_at LIMIT 1""",
                (account_id,),
            ).fetchone()
        return _row_to_job(row) if row else None

    def start(self, job_id: str) -> SyncJob | None:
        """pending → running, counting one attempt.

        Returns the running job, or None if the job was not pending.
        """
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """UPDATE sync_jobs SET state = 'running', attempts = attempts + 1,
                   started_at = ?, completed_at = NULL
                   WHERE id = ? AND state = 'pending'""",
                (now, job_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get(job_id)

    def update_progress(self, job_id: str, messages_synced: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE sync_jobs SET messages_synced = ? WHERE id = ? AND state = 'running'",
                (messages_synced, job_id),
            )

    def requeue(self, job_id: str, error: str) -> bool:
        """running → pending between retry attempts, keeping the error."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_jobs SET state = 'pending', error = ? WHERE id = ? AND state = 'running'",
                (error, job_id),
            )
            return cursor.rowcount > 0

    def complete(self, job_id: str, messages_synced: int) -> bool:
        """running → completed."""
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """UPDATE sync_jobs SET state = 'completed', completed_at = ?,
                   messages_synced = ?, error = NULL
                   WHERE id = ? AND state = 'running'""",
                (now, messages_synced, job_id),
            )
            return cursor.rowcount > 0

    def fail(self, job_id: str, error: str) -> bool:
        """pending | running → failed. Terminal states are final."""
        now = to_iso(utcnow())
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """UPDATE sync_jobs SET state = 'failed', completed_at = ?, error = ?
                   WHERE id = ? AND state IN ('pending', 'running')""",
                (now, error, job_id),
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.warning("Sync job %s failed: %s", job_id, error)
        return changed

    def list_running(self) -> list[SyncJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_jobs WHERE state = 'running' ORDER BY started_at"
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_pending(self) -> list[SyncJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_jobs WHERE state = 'pending' ORDER BY created_at"
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_for_account(self, account_id: str, limit: int = 20) -> list[SyncJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_jobs WHERE account_id = ? ORDER BY created_at DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def count_by_state(self) -> dict[str, int]:
        """Get count of jobs grouped by state."""
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) as cnt FROM sync_jobs GROUP BY state"
            ).fetchall()
        return {row["state"]: row["cnt"] for row in rows}
