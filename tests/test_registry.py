"""Tests for ProviderRegistry."""

from __future__ import annotations

import pytest

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import AuthError, UnsupportedProviderError
from mail_ingestor.core.models import Account, AccountCredentials
from mail_ingestor.providers.gmail import GmailAdapter
from mail_ingestor.providers.imap import ImapAdapter
from mail_ingestor.providers.registry import ProviderRegistry, build_default_registry
from conftest import FakeMailbox


class TestProviderRegistry:
    def test_default_registry(self) -> None:
        registry = build_default_registry()
        assert registry.provider_types() == ["gmail", "imap"]
        assert registry.get("gmail") is GmailAdapter
        assert registry.get("imap") is ImapAdapter

    def test_unknown_provider(self) -> None:
        with pytest.raises(UnsupportedProviderError, match="exchange"):
            ProviderRegistry().get("exchange")

    def test_register_returns_class(self) -> None:
        registry = ProviderRegistry()
        assert registry.register(ImapAdapter) is ImapAdapter

    def test_create_uses_account_provider(
        self, registry: ProviderRegistry, settings: MailIngestorSettings
    ) -> None:
        account = Account(id="a1", provider="fake", address="x@example.com")
        creds = AccountCredentials(provider="fake", email="x@example.com", access_token="token-1")
        adapter = registry.create(account, creds, settings)

        assert adapter.account is account
        assert adapter.credentials is creds
        assert adapter.test_connection() is True

    def test_create_unknown_provider(
        self, registry: ProviderRegistry, settings: MailIngestorSettings
    ) -> None:
        account = Account(id="a1", provider="pop3", address="x@example.com")
        with pytest.raises(UnsupportedProviderError):
            registry.create(account, AccountCredentials(provider="pop3", email="x"), settings)

    def test_refresh_dispatches_to_adapter(
        self,
        registry: ProviderRegistry,
        fake_mailbox: FakeMailbox,
        settings: MailIngestorSettings,
    ) -> None:
        creds = AccountCredentials(provider="fake", email="x", access_token="token-1")
        refreshed = registry.refresh_credentials("fake", creds, settings)

        assert fake_mailbox.refresh_calls == 1
        assert refreshed.access_token == "token-2"
        assert refreshed.version == 1

    def test_imap_refresh_not_possible(self, settings: MailIngestorSettings) -> None:
        creds = AccountCredentials(provider="imap", email="x", password="p")
        with pytest.raises(AuthError):
            build_default_registry().refresh_credentials("imap", creds, settings)
