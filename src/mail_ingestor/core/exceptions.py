"""Custom exceptions for the Mail Ingestor.

Provider errors are classified at the adapter boundary into transient and
terminal failures. The job queue reads ``retryable`` to decide whether a
failed job gets another attempt.
"""


class MailIngestorError(Exception):
    """Base exception for all Mail Ingestor errors."""

    retryable = False


class ProviderError(MailIngestorError):
    """A mail provider call failed."""


class TransientProviderError(ProviderError):
    """Network failure, timeout, or 5xx from the provider."""

    retryable = True


class RateLimitError(TransientProviderError):
    """Provider rate limit exceeded."""


class TerminalProviderError(ProviderError):
    """Failure that retrying will not fix."""


class AuthError(TerminalProviderError):
    """Credential invalid or revoked."""


class CredentialExpiredError(AuthError):
    """Credential expired; a refresh may recover it."""


class PermissionDeniedError(AuthError):
    """Provider refused the operation for this account."""


class UnsupportedProviderError(MailIngestorError):
    """No adapter is registered for the provider type."""


class UnsupportedCapabilityError(MailIngestorError):
    """The adapter does not implement the requested capability."""


class MalformedRecordError(MailIngestorError):
    """A single fetched record could not be parsed."""


class StorageError(MailIngestorError):
    """Persisting metadata or blobs failed."""

    retryable = True


class LeaseLostError(MailIngestorError):
    """The per-account lease expired while a job was still running."""


class SearchIndexError(MailIngestorError):
    """Pushing a document to the search index failed."""

    retryable = True


class ConversionError(MailIngestorError):
    """Failed to build a search document from message content."""


class LeaseUnavailableError(MailIngestorError):
    """Timed out waiting for another holder to release an account lease."""

    retryable = True
