"""Registry mapping provider type → adapter class."""

from __future__ import annotations

import logging

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import UnsupportedProviderError
from mail_ingestor.core.models import Account, AccountCredentials
from mail_ingestor.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Looks up and constructs provider adapters by provider type."""

    def __init__(self) -> None:
        self._adapters: dict[str, type[ProviderAdapter]] = {}

    def register(self, adapter_cls: type[ProviderAdapter]) -> type[ProviderAdapter]:
        """Register an adapter class under its ``provider_type``.

        Returns the class unchanged so this can be used as a decorator.
        """
        self._adapters[adapter_cls.provider_type] = adapter_cls
        logger.debug(
            "Registered %s adapter (rate limit %s)",
            adapter_cls.provider_type, adapter_cls.rate_limit,
        )
        return adapter_cls

    def get(self, provider_type: str) -> type[ProviderAdapter]:
        try:
            return self._adapters[provider_type]
        except KeyError:
            raise UnsupportedProviderError(f"Unsupported provider: {provider_type}") from None

    def provider_types(self) -> list[str]:
        return sorted(self._adapters)

    def create(
        self,
        account: Account,
        credentials: AccountCredentials,
        settings: MailIngestorSettings,
    ) -> ProviderAdapter:
        return self.get(account.provider)(account, credentials, settings)

    def refresh_credentials(
        self,
        provider_type: str,
        credentials: AccountCredentials,
        settings: MailIngestorSettings,
    ) -> AccountCredentials:
        return self.get(provider_type).refresh_credentials(credentials, settings)


def build_default_registry() -> ProviderRegistry:
    """Registry with every built-in provider adapter."""
    from mail_ingestor.providers.gmail import GmailAdapter
    from mail_ingestor.providers.imap import ImapAdapter

    registry = ProviderRegistry()
    registry.register(GmailAdapter)
    registry.register(ImapAdapter)
    return registry
