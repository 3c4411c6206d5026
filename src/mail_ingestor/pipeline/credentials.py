"""Credential manager: the single writer of refreshed account credentials."""

from __future__ import annotations

import logging
from dataclasses import replace

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import AuthError
from mail_ingestor.core.models import AccountCredentials
from mail_ingestor.providers.registry import ProviderRegistry
from mail_ingestor.storage.locks import AccountLocks
from mail_ingestor.storage.secrets import SecretStore

logger = logging.getLogger(__name__)


class CredentialManager:
    """Reads credentials from the secret store and rotates them on expiry.

    Refreshes run under the account's lease. When several holders of the
    same stale snapshot ask for a refresh, the first one refreshes and
    persists; the others find a newer version in the store and reuse it.
    """

    def __init__(
        self,
        secrets: SecretStore,
        locks: AccountLocks,
        registry: ProviderRegistry,
        settings: MailIngestorSettings,
    ) -> None:
        self._secrets = secrets
        self._locks = locks
        self._registry = registry
        self._settings = settings

    def get(self, account_id: str) -> AccountCredentials:
        """Current credential snapshot.

        Raises:
            AuthError: If no credentials are stored for the account.
        """
        credentials = self._secrets.read(account_id)
        if credentials is None:
            raise AuthError(f"No credentials stored for account {account_id}")
        return credentials

    def store(self, account_id: str, credentials: AccountCredentials) -> None:
        """Persist credentials provisioned from outside the pipeline."""
        with self._locks.hold(account_id):
            self._secrets.write(account_id, credentials)

    def refresh(self, account_id: str, stale: AccountCredentials) -> AccountCredentials:
        """Replace ``stale`` with fresh credentials, refreshing at most once.

        Args:
            account_id: Account whose credentials expired.
            stale: The snapshot the caller found to be expired.

        Returns:
            The newest credentials, refreshed by this call or a concurrent one.

        Raises:
            AuthError: If the provider refused to refresh the credentials.
        """
        with self._locks.hold(account_id):
            current = self.get(account_id)
            if current.version != stale.version:
                logger.info(
                    "Credentials for %s already refreshed (v%d → v%d), reusing",
                    account_id, stale.version, current.version,
                )
                return current

            try:
                refreshed = self._registry.refresh_credentials(
                    current.provider, current, self._settings
                )
            except AuthError as e:
                logger.error("Credential refresh failed for %s: %s", account_id, e)
                raise

            if refreshed.version <= current.version:
                refreshed = replace(refreshed, version=current.version + 1)
            self._secrets.write(account_id, refreshed)
            logger.info("Refreshed credentials for %s (now v%d)", account_id, refreshed.version)
            return refreshed
