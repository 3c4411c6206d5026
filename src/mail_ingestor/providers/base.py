"""Provider adapter contract shared by every mail provider variant."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import ClassVar

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import AuthError, UnsupportedCapabilityError
from mail_ingestor.core.models import (
    Account,
    AccountCredentials,
    FetchedMessage,
    RecordError,
)

logger = logging.getLogger(__name__)

TEST_CONNECTION = "test_connection"
FETCH_MESSAGES = "fetch_messages"
SEND_MESSAGE = "send_message"
SET_FLAGS = "set_flags"
MOVE = "move"
DELETE = "delete"
LIST_FOLDERS = "list_folders"

ALL_CAPABILITIES = frozenset(
    {TEST_CONNECTION, FETCH_MESSAGES, SEND_MESSAGE, SET_FLAGS, MOVE, DELETE, LIST_FOLDERS}
)


@dataclass(frozen=True)
class RateLimit:
    """Request budget a provider grants one account."""

    requests: int
    per_seconds: float

    def __str__(self) -> str:
        return f"{self.requests} requests / {self.per_seconds:g}s"


@dataclass(frozen=True)
class OutgoingMessage:
    to: tuple[str, ...]
    subject: str
    body_text: str = ""
    body_html: str = ""
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    in_reply_to: str = ""
    references: tuple[str, ...] = ()


class FetchResult:
    """Lazy, forward-only sequence of fetched messages.

    Adapters produce a stream of FetchedMessage and RecordError items.
    Iterating yields only the messages; record errors are collected in
    ``errors``. ``next_cursor`` moves past a record once the consumer asks
    for the next one, so a consumer that stops on an exception never skips
    the record it was processing.
    """

    def __init__(
        self, records: Iterable[FetchedMessage | RecordError], cursor: str | None
    ) -> None:
        self._records = records
        self._consumed = False
        self.errors: list[RecordError] = []
        self.next_cursor = cursor

    def __iter__(self) -> Iterator[FetchedMessage]:
        if self._consumed:
            raise RuntimeError("FetchResult can only be iterated once")
        self._consumed = True

        for record in self._records:
            if isinstance(record, RecordError):
                logger.warning(
                    "Skipping malformed record %s: %s",
                    record.provider_message_id, record.reason,
                )
                self.errors.append(record)
            else:
                yield record
            if record.position:
                self.next_cursor = record.position


class ProviderAdapter(ABC):
    """Uniform interface over one external mail provider.

    Provider failures must be classified before they leave the adapter:
    TransientProviderError for conditions worth retrying, AuthError (or a
    subclass) for credential and permission failures.
    """

    provider_type: ClassVar[str]
    capabilities: ClassVar[frozenset[str]] = ALL_CAPABILITIES
    rate_limit: ClassVar[RateLimit]

    def __init__(
        self,
        account: Account,
        credentials: AccountCredentials,
        settings: MailIngestorSettings,
    ) -> None:
        self._account = account
        self._credentials = credentials
        self._settings = settings

    @property
    def account(self) -> Account:
        return self._account

    @property
    def credentials(self) -> AccountCredentials:
        return self._credentials

    @classmethod
    def refresh_credentials(
        cls, credentials: AccountCredentials, settings: MailIngestorSettings
    ) -> AccountCredentials:
        """Obtain fresh credentials from the provider.

        Raises:
            AuthError: If this provider's credentials cannot be refreshed.
        """
        raise AuthError(f"{cls.provider_type} credentials cannot be refreshed")

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def _unsupported(self, capability: str) -> UnsupportedCapabilityError:
        return UnsupportedCapabilityError(
            f"{self.provider_type} adapter does not support {capability}"
        )

    @abstractmethod
    def test_connection(self) -> bool:
        """Return False if the provider rejects the account's credentials."""

    @abstractmethod
    def fetch_messages(self, cursor: str | None, limit: int) -> FetchResult:
        """Fetch up to ``limit`` messages newer than ``cursor``, oldest first."""

    def send_message(self, message: OutgoingMessage) -> str:
        raise self._unsupported(SEND_MESSAGE)

    def set_flags(
        self,
        provider_message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
    ) -> None:
        raise self._unsupported(SET_FLAGS)

    def move(self, provider_message_id: str, folder: str) -> None:
        raise self._unsupported(MOVE)

    def delete(self, provider_message_id: str) -> None:
        raise self._unsupported(DELETE)

    def list_folders(self) -> list[str]:
        raise self._unsupported(LIST_FOLDERS)

    def close(self) -> None:
        """Release provider connections held by the adapter."""
