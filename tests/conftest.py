"""Shared fixtures for Mail Ingestor tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from email.message import EmailMessage
from email.utils import format_datetime
from pathlib import Path
from typing import Any

import pytest

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import CredentialExpiredError, SearchIndexError
from mail_ingestor.core.models import (
    Account,
    AccountCredentials,
    FetchedMessage,
    RecordError,
)
from mail_ingestor.core.parser import MimeParser
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.providers.base import FetchResult, ProviderAdapter, RateLimit
from mail_ingestor.providers.registry import ProviderRegistry
from mail_ingestor.storage.database import Database

BASE_DATE = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


class FakeMailbox:
    """Provider-side state behind FakeAdapter, scripted by each test."""

    def __init__(self) -> None:
        self.records: list[FetchedMessage | RecordError] = []
        self.fetch_errors: list[Exception] = []
        self.raise_before: dict[str, Exception] = {}
        self.valid_tokens: set[str] = {"token-1"}
        self.refresh_error: Exception | None = None
        self.refresh_calls = 0
        self.fetch_cursors: list[str | None] = []
        self.flag_calls: list[tuple[str, bool | None, bool | None]] = []
        self.moves: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.on_fetch: Callable[[], None] | None = None


class FakeAdapter(ProviderAdapter):
    """In-memory adapter. Record positions are integers rendered as strings."""

    provider_type = "fake"
    rate_limit = RateLimit(requests=100, per_seconds=1.0)
    mailbox: FakeMailbox

    @classmethod
    def refresh_credentials(
        cls, credentials: AccountCredentials, settings: MailIngestorSettings
    ) -> AccountCredentials:
        cls.mailbox.refresh_calls += 1
        if cls.mailbox.refresh_error:
            raise cls.mailbox.refresh_error
        token = f"token-{cls.mailbox.refresh_calls + 1}"
        cls.mailbox.valid_tokens = {token}
        return credentials.with_tokens(token, None, None)

    def test_connection(self) -> bool:
        return self._credentials.access_token in self.mailbox.valid_tokens

    def fetch_messages(self, cursor: str | None, limit: int) -> FetchResult:
        self.mailbox.fetch_cursors.append(cursor)
        if self.mailbox.on_fetch:
            self.mailbox.on_fetch()
        if self.mailbox.fetch_errors:
            raise self.mailbox.fetch_errors.pop(0)
        after = int(cursor) if cursor else 0
        selected = [r for r in self.mailbox.records if int(r.position) > after][:limit]
        return FetchResult(self._iter(selected), cursor)

    def _iter(self, records: list[FetchedMessage | RecordError]) -> Iterator[FetchedMessage | RecordError]:
        for record in records:
            error = self.mailbox.raise_before.pop(record.provider_message_id, None)
            if error:
                raise error
            yield record

    def set_flags(
        self,
        provider_message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
    ) -> None:
        if self._credentials.access_token not in self.mailbox.valid_tokens:
            raise CredentialExpiredError("token expired")
        self.mailbox.flag_calls.append((provider_message_id, read, starred))

    def move(self, provider_message_id: str, folder: str) -> None:
        self.mailbox.moves.append((provider_message_id, folder))

    def delete(self, provider_message_id: str) -> None:
        self.mailbox.deleted.append(provider_message_id)

    def list_folders(self) -> list[str]:
        return ["INBOX", "Archive"]


class FlakyIndex:
    """In-memory search index that rejects the first ``failures`` writes."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.documents: dict[str, dict[str, Any]] = {}
        self.upsert_calls = 0

    def upsert(self, document_id: str, document: dict[str, Any]) -> None:
        self.upsert_calls += 1
        if self.failures:
            self.failures -= 1
            raise SearchIndexError("index unavailable")
        self.documents[document_id] = document

    def delete(self, document_id: str) -> None:
        self.documents.pop(document_id, None)


@pytest.fixture
def settings(tmp_path: Path) -> MailIngestorSettings:
    """Settings pointing at a temporary directory, with zero retry delays."""
    return MailIngestorSettings(
        _env_file=None,
        database_path=tmp_path / "state.db",
        blob_dir=tmp_path / "blobs",
        secrets_dir=tmp_path / "secrets",
        search_index_path=tmp_path / "search.db",
        initial_backoff_seconds=0,
        index_initial_backoff_seconds=0,
        max_backoff_seconds=0,
        lease_retry_delay_seconds=0.01,
        lease_poll_seconds=0.01,
        sync_concurrency=4,
        index_concurrency=2,
    )


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """A connected metadata database."""
    database = Database(tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def registry(fake_mailbox: FakeMailbox) -> ProviderRegistry:
    """Registry with a FakeAdapter subclass bound to this test's mailbox."""
    adapter_cls = type("BoundFakeAdapter", (FakeAdapter,), {"mailbox": fake_mailbox})
    registry = ProviderRegistry()
    registry.register(adapter_cls)
    return registry


@pytest.fixture
def context(settings: MailIngestorSettings, registry: ProviderRegistry) -> Iterator[ServiceContext]:
    ctx = ServiceContext.open(settings, registry=registry)
    yield ctx
    ctx.close()


@pytest.fixture
def account(context: ServiceContext) -> Account:
    """A registered fake-provider account with valid credentials."""
    account = context.accounts.register_account("fake", "user@example.com")
    context.credentials.store(
        account.id,
        AccountCredentials(
            provider="fake",
            email="user@example.com",
            access_token="token-1",
            refresh_token="refresh-1",
        ),
    )
    return context.accounts.get(account.id)


@pytest.fixture
def make_raw() -> Callable[..., bytes]:
    """Build RFC 822 bytes for a message."""

    def _make(
        *,
        subject: str = "Hello",
        sender: str = "Alice <alice@example.com>",
        to: str = "bob@example.com",
        cc: str = "",
        message_id: str = "<a@example.com>",
        in_reply_to: str = "",
        date: datetime = BASE_DATE,
        text: str = "Hello, plain text.",
        html: str | None = None,
        attachments: list[tuple[str, str, bytes]] | None = None,
    ) -> bytes:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = to
        if cc:
            msg["Cc"] = cc
        msg["Subject"] = subject
        msg["Message-ID"] = message_id
        msg["Date"] = format_datetime(date)
        if in_reply_to:
            msg["In-Reply-To"] = in_reply_to
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        for filename, content_type, content in attachments or []:
            maintype, subtype = content_type.split("/", 1)
            msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        return msg.as_bytes()

    return _make


@pytest.fixture
def make_message(make_raw: Callable[..., bytes]) -> Callable[..., FetchedMessage]:
    """Build a parsed FetchedMessage whose position is its index."""
    parser = MimeParser()

    def _make(provider_message_id: str, position: int, **kwargs: object) -> FetchedMessage:
        kwargs.setdefault("message_id", f"<{provider_message_id}@example.com>")
        kwargs.setdefault("date", BASE_DATE + timedelta(minutes=position))
        return parser.parse(make_raw(**kwargs), provider_message_id, position=str(position))

    return _make
