"""Mail Ingestor - Sync mail from external providers into a deduplicated, threaded, searchable store."""

from mail_ingestor.core.models import (
    Account,
    AccountCredentials,
    Attachment,
    FetchedMessage,
    StoredMessage,
    SyncJob,
    SyncProgress,
    Thread,
)
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.pipeline.orchestrator import SyncOrchestrator

__all__ = [
    "Account",
    "AccountCredentials",
    "Attachment",
    "FetchedMessage",
    "ServiceContext",
    "StoredMessage",
    "SyncJob",
    "SyncOrchestrator",
    "SyncProgress",
    "Thread",
]
