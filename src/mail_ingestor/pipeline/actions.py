"""Mailbox mutations on stored messages, mirrored to the provider."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from mail_ingestor.core.exceptions import CredentialExpiredError, StorageError
from mail_ingestor.core.models import StoredMessage
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.pipeline.indexer import IndexPipeline
from mail_ingestor.providers.base import OutgoingMessage, ProviderAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MailboxActions:
    """Applies flag changes, moves, deletes and sends through the account's adapter.

    A provider rejection for expired credentials triggers one refresh
    through the credential manager and one retry of the call. Every local
    change is queued for re-indexing so search reflects the new state.
    """

    def __init__(self, context: ServiceContext, indexer: IndexPipeline) -> None:
        self._context = context
        self._indexer = indexer

    def _message(self, message_id: str) -> StoredMessage:
        message = self._context.messages.get(message_id)
        if message is None:
            raise ValueError(f"Unknown message: {message_id}")
        return message

    def _call(self, account_id: str, operation: Callable[[ProviderAdapter], T]) -> T:
        account = self._context.accounts.get(account_id)
        if account is None:
            raise ValueError(f"Unknown account: {account_id}")

        registry = self._context.registry
        settings = self._context.settings
        credentials = self._context.credentials.get(account_id)
        adapter = registry.create(account, credentials, settings)
        try:
            try:
                return operation(adapter)
            except CredentialExpiredError:
                logger.info("Credentials for %s expired, refreshing and retrying", account_id)
                adapter.close()
                credentials = self._context.credentials.refresh(account_id, adapter.credentials)
                adapter = registry.create(account, credentials, settings)
                return operation(adapter)
        finally:
            adapter.close()

    def set_flags(
        self,
        message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
    ) -> StoredMessage:
        message = self._message(message_id)
        self._call(
            message.account_id,
            lambda adapter: adapter.set_flags(
                message.provider_message_id, read=read, starred=starred
            ),
        )
        updated = self._context.messages.update_flags(message_id, read=read, starred=starred)
        if updated is None:
            raise StorageError(f"Message {message_id} vanished during flag update")
        self._indexer.enqueue(message_id)
        return updated

    def move(self, message_id: str, folder: str) -> None:
        message = self._message(message_id)
        self._call(
            message.account_id,
            lambda adapter: adapter.move(message.provider_message_id, folder),
        )
        self._context.messages.update_folder(message_id, folder)
        self._indexer.enqueue(message_id)

    def delete(self, message_id: str) -> None:
        """Delete on the provider; the stored copy stays, filed under Trash."""
        message = self._message(message_id)
        self._call(
            message.account_id,
            lambda adapter: adapter.delete(message.provider_message_id),
        )
        self._context.messages.update_folder(message_id, "Trash")
        self._indexer.enqueue(message_id)

    def send(self, account_id: str, message: OutgoingMessage) -> str:
        """Send through the provider. Returns the provider's message id."""
        return self._call(account_id, lambda adapter: adapter.send_message(message))

    def list_folders(self, account_id: str) -> list[str]:
        return self._call(account_id, lambda adapter: adapter.list_folders())
