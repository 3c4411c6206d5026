"""Per-account exclusive leases backed by the shared SQLite database.

A lease row names its holder and an expiry. Acquisition is a single
conditional upsert that only succeeds when no lease exists, the existing
lease has expired, or the caller already holds it. Within a process the
lease is reentrant for the owning thread, so code already running under an
account's lease (a sync) can call code that takes it again (a credential
refresh) without deadlocking.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from mail_ingestor.core.exceptions import LeaseLostError, LeaseUnavailableError
from mail_ingestor.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class _Hold:
    thread_id: int
    holder: str
    depth: int = 1


class AccountLocks:
    """Keyed lease lock shared by the orchestrator and the credential manager."""

    def __init__(
        self,
        db: Database,
        *,
        lease_seconds: float = 600.0,
        poll_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._lease_seconds = lease_seconds
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._process_id = uuid.uuid4().hex[:12]
        self._holds: dict[str, _Hold] = {}
        self._guard = threading.Lock()

    @property
    def lease_seconds(self) -> float:
        return self._lease_seconds

    def _holder_name(self) -> str:
        return f"{self._process_id}:{threading.get_ident()}"

    def try_acquire(self, account_id: str) -> bool:
        """Take the account's lease without waiting.

        Returns True if the calling thread now holds the lease.
        """
        thread_id = threading.get_ident()
        with self._guard:
            hold = self._holds.get(account_id)
            if hold and hold.thread_id == thread_id:
                hold.depth += 1
                return True

        holder = self._holder_name()
        now = self._clock()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO account_leases (account_id, holder, expires_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET
                       holder = excluded.holder,
                       expires_at = excluded.expires_at
                   WHERE account_leases.expires_at <= ?
                      OR account_leases.holder = excluded.holder""",
                (account_id, holder, now + self._lease_seconds, now),
            )
            acquired = cursor.rowcount > 0

        if acquired:
            with self._guard:
                # Replaces any expired in-process hold from a stalled thread
                self._holds[account_id] = _Hold(thread_id=thread_id, holder=holder)
            logger.debug("Acquired lease on %s as %s", account_id, holder)
        return acquired

    def acquire(self, account_id: str, timeout: float | None = None) -> bool:
        """Block until the lease is acquired or ``timeout`` seconds pass."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.try_acquire(account_id):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self._poll_seconds)
        return True

    def renew(self, account_id: str) -> None:
        """Push the lease expiry forward.

        Raises:
            LeaseLostError: If the lease expired and was taken by someone else.
        """
        hold = self._current_hold(account_id)
        if hold is None:
            raise LeaseLostError(f"Lease on {account_id} is not held by this thread")

        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE account_leases SET expires_at = ? WHERE account_id = ? AND holder = ?",
                (self._clock() + self._lease_seconds, account_id, hold.holder),
            )
            renewed = cursor.rowcount > 0

        if not renewed:
            with self._guard:
                if self._holds.get(account_id) is hold:
                    del self._holds[account_id]
            raise LeaseLostError(f"Lease on {account_id} was lost to another holder")

    def release(self, account_id: str) -> None:
        hold = self._current_hold(account_id)
        if hold is None:
            logger.warning("Release of %s lease not held by this thread", account_id)
            return

        with self._guard:
            hold.depth -= 1
            if hold.depth > 0:
                return
            if self._holds.get(account_id) is hold:
                del self._holds[account_id]

        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM account_leases WHERE account_id = ? AND holder = ?",
                (account_id, hold.holder),
            )
        logger.debug("Released lease on %s", account_id)

    @contextmanager
    def hold(self, account_id: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the lease for the duration of a block.

        Raises:
            LeaseUnavailableError: If the lease could not be taken in time.
        """
        wait = self._lease_seconds if timeout is None else timeout
        if not self.acquire(account_id, timeout=wait):
            raise LeaseUnavailableError(f"Timed out waiting for lease on {account_id}")
        try:
            yield
        finally:
            self.release(account_id)

    def is_held(self, account_id: str) -> bool:
        """True if the calling thread holds the lease."""
        return self._current_hold(account_id) is not None

    def is_live(self, account_id: str) -> bool:
        """True if any holder has an unexpired lease on the account."""
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT expires_at FROM account_leases WHERE account_id = ?", (account_id,)
            ).fetchone()
        return row is not None and row["expires_at"] > self._clock()

    def _current_hold(self, account_id: str) -> _Hold | None:
        with self._guard:
            hold = self._holds.get(account_id)
            if hold and hold.thread_id == threading.get_ident():
                return hold
            return None
