"""Explicit service context shared by the pipeline components."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.pipeline.credentials import CredentialManager
from mail_ingestor.providers.registry import ProviderRegistry, build_default_registry
from mail_ingestor.search.index import SearchIndex, SqliteSearchIndex
from mail_ingestor.storage.accounts import AccountRepository
from mail_ingestor.storage.blobs import BlobStore, FilesystemBlobStore
from mail_ingestor.storage.database import Database
from mail_ingestor.storage.jobs import SyncJobRepository
from mail_ingestor.storage.locks import AccountLocks
from mail_ingestor.storage.messages import MessageStore
from mail_ingestor.storage.secrets import JsonFileSecretStore, SecretStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Everything the orchestrator and its collaborators need.

    Built and closed by the process entry point; components receive it (or
    parts of it) through their constructors.
    """

    settings: MailIngestorSettings
    db: Database
    blobs: BlobStore
    secrets: SecretStore
    search_index: SearchIndex
    registry: ProviderRegistry
    locks: AccountLocks
    accounts: AccountRepository
    jobs: SyncJobRepository
    messages: MessageStore
    credentials: CredentialManager

    @classmethod
    def open(
        cls,
        settings: MailIngestorSettings | None = None,
        *,
        registry: ProviderRegistry | None = None,
        blobs: BlobStore | None = None,
        secrets: SecretStore | None = None,
        search_index: SearchIndex | None = None,
    ) -> ServiceContext:
        """Build and connect a context; unspecified services get the local implementations."""
        settings = settings or MailIngestorSettings()
        settings.ensure_directories()

        db = Database(settings.database_path)
        db.connect()

        if search_index is None:
            local_index = SqliteSearchIndex(settings.search_index_path)
            local_index.connect()
            search_index = local_index

        blobs = blobs or FilesystemBlobStore(settings.blob_dir)
        secrets = secrets or JsonFileSecretStore(settings.secrets_dir)
        registry = registry or build_default_registry()
        locks = AccountLocks(
            db,
            lease_seconds=settings.lease_timeout_seconds,
            poll_seconds=settings.lease_poll_seconds,
        )

        logger.debug("Opened service context on %s", settings.database_path)
        return cls(
            settings=settings,
            db=db,
            blobs=blobs,
            secrets=secrets,
            search_index=search_index,
            registry=registry,
            locks=locks,
            accounts=AccountRepository(db),
            jobs=SyncJobRepository(db),
            messages=MessageStore(db, blobs),
            credentials=CredentialManager(secrets, locks, registry, settings),
        )

    def close(self) -> None:
        """Clean up resources."""
        close_index = getattr(self.search_index, "close", None)
        if close_index:
            close_index()
        self.db.close()

    def __enter__(self) -> ServiceContext:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
