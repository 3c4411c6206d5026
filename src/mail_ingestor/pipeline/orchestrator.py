"""Sync orchestrator: scheduling, per-account serialization, retry, credential rotation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from mail_ingestor.core.exceptions import (
    AuthError,
    CredentialExpiredError,
    LeaseLostError,
    MalformedRecordError,
)
from mail_ingestor.core.models import Account, AccountCredentials, SyncJob, SyncProgress
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.pipeline.indexer import IndexPipeline
from mail_ingestor.pipeline.queue import (
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    JobDeferred,
    LocalJobQueue,
    QueuedJob,
)
from mail_ingestor.providers.base import ProviderAdapter
from mail_ingestor.storage.database import utcnow

logger = logging.getLogger(__name__)

# Accounts in these states never start a sync
INELIGIBLE_STATUSES = frozenset({"disabled", "auth_failed"})


@dataclass(frozen=True)
class SyncTask:
    job_id: str
    account_id: str


class SyncOrchestrator:
    """Runs sync jobs through pending → running → completed | failed.

    Per job:
    1. Take the account lease; if another worker holds it, defer the job.
    2. pending → running, account → syncing.
    3. test_connection, refreshing credentials once if they are rejected.
    4. fetch_messages(cursor) → MessageStore → IndexPipeline, renewing the
       lease after every message.
    5. Persist the advanced cursor, mark the job completed.

    Failures with ``retryable = True`` send the job back to pending until
    the queue's attempt budget runs out; anything else fails it at once.
    """

    def __init__(
        self,
        context: ServiceContext,
        *,
        sync_queue: LocalJobQueue | None = None,
        index_pipeline: IndexPipeline | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        settings = context.settings
        self._context = context
        self._settings = settings
        self._sync_queue = sync_queue or LocalJobQueue(
            "sync",
            max_attempts=settings.max_attempts,
            initial_backoff=settings.initial_backoff_seconds,
            max_backoff=settings.max_backoff_seconds,
        )
        self._indexer = index_pipeline or IndexPipeline(
            context.messages,
            context.search_index,
            LocalJobQueue(
                "index",
                max_attempts=settings.index_max_attempts,
                initial_backoff=settings.index_initial_backoff_seconds,
                max_backoff=settings.max_backoff_seconds,
            ),
        )
        self._on_progress = on_progress
        self._stop_event = threading.Event()

    @property
    def sync_queue(self) -> LocalJobQueue:
        return self._sync_queue

    @property
    def indexer(self) -> IndexPipeline:
        return self._indexer

    @property
    def on_progress(self) -> Callable[[SyncProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[SyncProgress], None] | None) -> None:
        self._on_progress = callback

    # -- Scheduling -------------------------------------------------------

    def schedule_due(self, now: datetime | None = None) -> list[SyncJob]:
        """Enqueue a job for every active account whose last sync is older than the interval."""
        now = now or utcnow()
        interval = timedelta(minutes=self._settings.sync_interval_minutes)
        scheduled: list[SyncJob] = []
        for account in self._context.accounts.list_due_for_sync(now, interval):
            job, created = self._context.jobs.create_unless_open(account.id, "scheduled")
            if created:
                self._sync_queue.enqueue(SyncTask(job.id, account.id), priority=PRIORITY_NORMAL)
                scheduled.append(job)
        if scheduled:
            logger.info("Scheduled %d sync job(s)", len(scheduled))
        return scheduled

    def request_sync(self, account_id: str) -> SyncJob:
        """Enqueue an on-demand sync ahead of scheduled work.

        Returns the account's already open job if there is one.
        """
        if self._context.accounts.get(account_id) is None:
            raise ValueError(f"Unknown account: {account_id}")
        job, created = self._context.jobs.create_unless_open(account_id, "on_demand")
        if created:
            self._sync_queue.enqueue(SyncTask(job.id, account_id), priority=PRIORITY_HIGH)
            logger.info("On-demand sync %s requested for %s", job.id, account_id)
        return job

    def recover_pending(self) -> int:
        """Re-enqueue pending jobs left in the database by a previous process.

        A recovered job keeps only the attempts it has left; one whose budget
        is already spent is failed instead.
        """
        count = 0
        for job in self._context.jobs.list_pending():
            remaining = self._sync_queue.max_attempts - job.attempts
            if remaining <= 0:
                self._context.jobs.fail(
                    job.id, f"Retries exhausted before restart ({job.attempts} attempts)"
                )
                continue
            priority = PRIORITY_HIGH if job.trigger == "on_demand" else PRIORITY_NORMAL
            self._sync_queue.enqueue(
                SyncTask(job.id, job.account_id), priority=priority, max_attempts=remaining
            )
            count += 1
        if count:
            logger.info("Recovered %d pending sync job(s)", count)
        return count

    def reap_stale_jobs(self) -> int:
        """Fail running jobs whose account lease has expired.

        Returns the number of jobs reaped.
        """
        reaped = 0
        for job in self._context.jobs.list_running():
            if self._context.locks.is_live(job.account_id):
                continue
            if self._context.jobs.fail(job.id, "Lease expired while running"):
                reaped += 1
                account = self._context.accounts.get(job.account_id)
                if account and account.status == "syncing":
                    self._context.accounts.set_status(
                        job.account_id, "active", error="Sync worker stalled; lease expired"
                    )
        if reaped:
            logger.warning("Reaped %d stale sync job(s)", reaped)
        return reaped

    # -- Job execution ----------------------------------------------------

    def handle_job(self, queued: QueuedJob) -> None:
        """Queue handler for one sync job attempt."""
        task: SyncTask = queued.payload
        jobs = self._context.jobs
        job = jobs.get(task.job_id)
        if job is None or job.is_terminal:
            logger.debug("Sync job %s is gone or finished, dropping", task.job_id)
            return

        account = self._context.accounts.get(job.account_id)
        if account is None:
            jobs.fail(job.id, f"Account {job.account_id} no longer exists")
            return
        if account.status in INELIGIBLE_STATUSES:
            jobs.fail(job.id, f"Account is {account.status}")
            return

        locks = self._context.locks
        if not locks.try_acquire(account.id):
            # Not an attempt: the account is busy with another job
            raise JobDeferred(self._settings.lease_retry_delay_seconds, "account lease busy")

        try:
            # Holding the lease means any other running job here has lost its own
            for orphan in jobs.list_running():
                if orphan.account_id == account.id and orphan.id != job.id:
                    jobs.fail(orphan.id, "Lease expired while running")

            running = jobs.start(job.id)
            if running is None:
                return
            account = self._context.accounts.get(account.id) or account
            if account.status in INELIGIBLE_STATUSES:
                jobs.fail(job.id, f"Account is {account.status}")
                return
            self._context.accounts.set_status(account.id, "syncing")
            logger.info(
                "Sync job %s started for %s (attempt %d/%d)",
                job.id, account.id, queued.attempts, queued.max_attempts,
            )

            try:
                progress = self._sync(running, account)
            except Exception as e:
                self._record_failure(running, account, e, final=queued.is_final_attempt)
                raise

            if not jobs.complete(job.id, progress.messages_stored):
                logger.warning("Sync job %s was no longer running at completion", job.id)
                return
            logger.info(
                "Sync job %s completed for %s: %d new, %d duplicate, %d skipped",
                job.id, account.id, progress.messages_stored,
                progress.messages_duplicate, progress.messages_skipped,
            )
        finally:
            locks.release(account.id)

    def _record_failure(
        self, job: SyncJob, account: Account, error: Exception, *, final: bool
    ) -> None:
        jobs = self._context.jobs
        accounts = self._context.accounts
        message = f"{type(error).__name__}: {error}"

        if isinstance(error, LeaseLostError):
            jobs.fail(job.id, message)
            # A new lease holder manages the status for its own job
            if not any(j.account_id == account.id for j in jobs.list_running()):
                accounts.set_status(account.id, "active", error=message)
            return

        if getattr(error, "retryable", False) and not final:
            jobs.requeue(job.id, message)
            accounts.set_status(account.id, "active")
            return

        jobs.fail(job.id, message)
        if isinstance(error, AuthError):
            accounts.set_status(account.id, "auth_failed", error=message)
            logger.error("Account %s halted: %s", account.id, message)
        else:
            accounts.set_status(account.id, "active", error=message)

    def _sync(self, job: SyncJob, account: Account) -> SyncProgress:
        progress = SyncProgress(account_id=account.id, current_stage="connect")
        self._notify(progress)

        credentials = self._context.credentials.get(account.id)
        refreshed = False
        if credentials.is_expired(utcnow()):
            credentials = self._context.credentials.refresh(account.id, credentials)
            refreshed = True

        adapter = self._connect(account, credentials, refreshed)
        try:
            while True:
                try:
                    self._fetch_and_store(job, account, adapter, progress)
                    return progress
                except CredentialExpiredError as e:
                    if refreshed:
                        raise
                    logger.warning(
                        "Credentials for %s expired mid-fetch, refreshing: %s", account.id, e
                    )
                    adapter.close()
                    credentials = self._context.credentials.refresh(
                        account.id, adapter.credentials
                    )
                    refreshed = True
                    adapter = self._context.registry.create(
                        account, credentials, self._settings
                    )
        finally:
            adapter.close()

    def _connect(
        self, account: Account, credentials: AccountCredentials, refreshed: bool
    ) -> ProviderAdapter:
        """Build an adapter whose credentials pass test_connection."""
        registry = self._context.registry
        adapter = registry.create(account, credentials, self._settings)
        if adapter.test_connection():
            return adapter
        adapter.close()

        if refreshed:
            raise AuthError(f"Provider rejected credentials for {account.id}")
        logger.info("Connection test failed for %s, refreshing credentials", account.id)
        credentials = self._context.credentials.refresh(account.id, credentials)
        adapter = registry.create(account, credentials, self._settings)
        if not adapter.test_connection():
            adapter.close()
            raise AuthError(f"Provider rejected refreshed credentials for {account.id}")
        return adapter

    def _fetch_and_store(
        self,
        job: SyncJob,
        account: Account,
        adapter: ProviderAdapter,
        progress: SyncProgress,
    ) -> None:
        """Fetch from the account cursor and store every message.

        Counters accumulate across calls. A restart after a credential refresh
        re-reads the same window, and dedup turns the overlap into duplicates.
        """
        progress.current_stage = "fetch"
        self._notify(progress)

        result = adapter.fetch_messages(account.sync_cursor, self._settings.fetch_limit)
        for message in result:
            progress.messages_fetched += 1
            try:
                stored, created = self._context.messages.store(account.id, message)
            except MalformedRecordError as e:
                logger.warning(
                    "Skipping message %s for %s: %s",
                    message.provider_message_id, account.id, e,
                )
                progress.messages_skipped += 1
                continue

            if created:
                progress.messages_stored += 1
            else:
                progress.messages_duplicate += 1

            self._indexer.enqueue(stored.id)
            progress.index_enqueued += 1

            self._context.locks.renew(account.id)
            self._context.jobs.update_progress(job.id, progress.messages_stored)
            self._notify(progress)

        progress.messages_skipped += len(result.errors)
        # The cursor may only move while this worker still owns the account
        self._context.locks.renew(account.id)
        self._context.accounts.record_sync_success(account.id, result.next_cursor, utcnow())
        progress.current_stage = "complete"
        self._notify(progress)

    # -- Driving ----------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> list[SyncJob]:
        """One scheduler tick: reap stale jobs and enqueue due accounts."""
        self.reap_stale_jobs()
        return self.schedule_due(now)

    def start_workers(self) -> None:
        self._sync_queue.process(self.handle_job, self._settings.sync_concurrency)
        self._indexer.start(self._settings.index_concurrency)

    def run_forever(self) -> None:
        """Start the worker pools and tick the scheduler until stop()."""
        self._stop_event.clear()
        self.recover_pending()
        self.start_workers()
        logger.info(
            "Scheduler running: every %.0fs, %d sync workers, %d index workers",
            self._settings.scheduler_tick_seconds,
            self._settings.sync_concurrency,
            self._settings.index_concurrency,
        )
        try:
            while not self._stop_event.is_set():
                self.run_once()
                self._stop_event.wait(self._settings.scheduler_tick_seconds)
        finally:
            self._sync_queue.stop()
            self._indexer.stop()

    def stop(self) -> None:
        self._stop_event.set()
        self._sync_queue.stop()
        self._indexer.stop()

    def drain(self) -> int:
        """Run all queued sync jobs, then all index jobs, on the calling thread."""
        processed = self._sync_queue.drain(self.handle_job)
        self._indexer.drain()
        return processed

    def _notify(self, progress: SyncProgress) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(progress)
