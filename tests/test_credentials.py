"""Tests for CredentialManager refresh coordination."""

from __future__ import annotations

import threading
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from conftest import FakeMailbox
from mail_ingestor.core.exceptions import AuthError
from mail_ingestor.core.models import Account, AccountCredentials
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.pipeline.credentials import CredentialManager


class TestGetAndStore:
    def test_get_returns_stored(self, context: ServiceContext, account: Account) -> None:
        creds = context.credentials.get(account.id)
        assert creds.access_token == "token-1"
        assert creds.version == 0

    def test_get_missing(self, context: ServiceContext) -> None:
        with pytest.raises(AuthError, match="No credentials"):
            context.credentials.get("nobody")

    def test_store_replaces_and_releases_lease(
        self, context: ServiceContext, account: Account
    ) -> None:
        context.credentials.store(
            account.id,
            AccountCredentials(
                provider="fake", email="user@example.com", access_token="provisioned"
            ),
        )

        assert context.credentials.get(account.id).access_token == "provisioned"
        assert not context.locks.is_live(account.id)
        assert not context.locks.is_held(account.id)


class TestRefresh:
    def test_refresh_persists_new_version(
        self, context: ServiceContext, account: Account, fake_mailbox: FakeMailbox
    ) -> None:
        stale = context.credentials.get(account.id)
        fresh = context.credentials.refresh(account.id, stale)

        assert fake_mailbox.refresh_calls == 1
        assert fresh.access_token == "token-2"
        assert fresh.refresh_token == "refresh-1"
        assert fresh.version == 1
        assert context.credentials.get(account.id) == fresh

    def test_stale_snapshot_reuses_newer_credentials(
        self, context: ServiceContext, account: Account, fake_mailbox: FakeMailbox
    ) -> None:
        stale = context.credentials.get(account.id)
        first = context.credentials.refresh(account.id, stale)
        second = context.credentials.refresh(account.id, stale)

        assert fake_mailbox.refresh_calls == 1
        assert second == first

    def test_concurrent_refreshes_refresh_once(
        self, context: ServiceContext, account: Account, fake_mailbox: FakeMailbox
    ) -> None:
        stale = context.credentials.get(account.id)
        barrier = threading.Barrier(5, timeout=5)
        results: list[AccountCredentials] = []
        errors: list[BaseException] = []
        guard = threading.Lock()

        def worker() -> None:
            try:
                barrier.wait()
                fresh = context.credentials.refresh(account.id, stale)
                with guard:
                    results.append(fresh)
            except BaseException as e:
                with guard:
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert fake_mailbox.refresh_calls == 1
        assert len(results) == 5
        assert {r.access_token for r in results} == {"token-2"}
        assert {r.version for r in results} == {1}

    def test_refresh_failure_keeps_stored_credentials(
        self, context: ServiceContext, account: Account, fake_mailbox: FakeMailbox
    ) -> None:
        fake_mailbox.refresh_error = AuthError("refresh token revoked")
        stale = context.credentials.get(account.id)

        with pytest.raises(AuthError, match="revoked"):
            context.credentials.refresh(account.id, stale)
        assert context.credentials.get(account.id) == stale
        assert not context.locks.is_live(account.id)

    def test_version_forced_forward(self, context: ServiceContext, account: Account) -> None:
        registry = MagicMock()
        registry.refresh_credentials.side_effect = lambda provider, creds, settings: replace(
            creds, access_token="same-version"
        )
        manager = CredentialManager(context.secrets, context.locks, registry, context.settings)

        fresh = manager.refresh(account.id, manager.get(account.id))
        assert fresh.version == 1
        assert manager.get(account.id).access_token == "same-version"
