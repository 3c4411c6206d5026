"""Gmail API adapter: message discovery, raw fetch, and mailbox mutations."""

from __future__ import annotations

import base64
import logging
import random
import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from email.message import EmailMessage
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.auth import (
    build_access_credentials,
    build_gmail_service,
    refresh_access_token,
)
from mail_ingestor.core.exceptions import (
    AuthError,
    CredentialExpiredError,
    MalformedRecordError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    TerminalProviderError,
    TransientProviderError,
)
from mail_ingestor.core.models import (
    Account,
    AccountCredentials,
    FetchedMessage,
    MessageFlags,
    RecordError,
)
from mail_ingestor.core.parser import MimeParser
from mail_ingestor.providers.base import FetchResult, OutgoingMessage, ProviderAdapter, RateLimit

logger = logging.getLogger(__name__)

# Labels that express folder or flag state rather than user labels
_SYSTEM_LABELS = {"UNREAD", "STARRED", "INBOX", "SENT", "DRAFT", "TRASH", "SPAM", "IMPORTANT"}

_FOLDER_LABELS = {"Trash": "TRASH", "Spam": "SPAM", "Inbox": "INBOX", "INBOX": "INBOX"}


# 403 reasons Gmail uses for quota exhaustion
_RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API rate limit.

    HttpError is judged by status and response body only; its string form
    carries the request URI, whose message ids can contain any digits.
    """
    if isinstance(exc, HttpError):
        if exc.status_code == 429:
            return True
        if exc.status_code != 403:
            return False
        content = exc.content
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        return any(reason in (content or "") for reason in _RATE_LIMIT_REASONS)
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


def classify_error(exc: Exception, context: str) -> ProviderError:
    """Map a raw Gmail client exception onto the transient/terminal taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if _is_rate_limit_error(exc):
        return RateLimitError(f"Rate limited during {context}: {exc}")
    if isinstance(exc, RefreshError):
        return CredentialExpiredError(f"Credential expired during {context}: {exc}")
    if isinstance(exc, HttpError):
        status = exc.status_code or 0
        if status == 401:
            return CredentialExpiredError(f"Unauthorized during {context}: {exc}")
        if status == 403:
            return PermissionDeniedError(f"Permission denied during {context}: {exc}")
        if status >= 500 or status == 408:
            return TransientProviderError(f"Server error during {context}: {exc}")
        return TerminalProviderError(f"Failed to {context}: {exc}")
    if isinstance(exc, (TransportError, TimeoutError, ConnectionError, OSError)):
        return TransientProviderError(f"Network error during {context}: {exc}")
    return TransientProviderError(f"Failed to {context}: {exc}")


class GmailAdapter(ProviderAdapter):
    """Gmail provider adapter built on the Gmail REST API."""

    provider_type = "gmail"
    # Per-user quota: 250 units/second
    rate_limit = RateLimit(requests=250, per_seconds=1.0)

    def __init__(
        self,
        account: Account,
        credentials: AccountCredentials,
        settings: MailIngestorSettings,
        *,
        service: Resource | None = None,
        user_id: str = "me",
    ) -> None:
        super().__init__(account, credentials, settings)
        self._service = service
        self._user_id = user_id
        self._parser = MimeParser()
        self._max_retries = settings.gmail_max_retries
        self._initial_backoff = settings.gmail_initial_backoff_seconds
        self._max_backoff = settings.gmail_max_backoff_seconds
        self._num_retries = settings.gmail_num_retries

    @classmethod
    def refresh_credentials(
        cls, credentials: AccountCredentials, settings: MailIngestorSettings
    ) -> AccountCredentials:
        return refresh_access_token(
            credentials,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_uri=settings.google_token_uri,
        )

    @property
    def service(self) -> Resource:
        if self._service is None:
            self._service = build_gmail_service(build_access_credentials(self._credentials))
        return self._service

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on 429 errors.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list labels").

        Returns:
            The API response dict.

        Raises:
            RateLimitError: When retries are exhausted on 429 errors.
            ProviderError: Classified failure for any other error.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except ProviderError:
                raise
            except Exception as e:
                if not _is_rate_limit_error(e):
                    raise classify_error(e, context) from e
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during {context} after "
                        f"{self._max_retries} retries: {e}"
                    ) from e
                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                logger.warning(
                    "Rate limited during %s (attempt %d/%d), sleeping %.2fs",
                    context, attempt + 1, self._max_retries, jitter,
                )
                time.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)

        raise RateLimitError(f"Rate limited during {context} after {self._max_retries} retries")

    def test_connection(self) -> bool:
        request = self.service.users().getProfile(userId=self._user_id)
        try:
            profile = self._execute_with_retry(request, "get profile")
        except AuthError as e:
            logger.error("Gmail connection test failed for %s: %s", self._account.id, e)
            return False
        logger.info(
            "Gmail connection test successful for %s (%s)",
            self._account.id, profile.get("emailAddress", ""),
        )
        return True

    def _build_query(self, cursor: str | None) -> str:
        if cursor:
            since_seconds = int(cursor) // 1000
        else:
            since = datetime.now(UTC) - timedelta(days=self._settings.initial_lookback_days)
            since_seconds = int(since.timestamp())
        return f"after:{since_seconds}"

    def _list_message_ids(self, query: str) -> list[str]:
        """Page through message ids matching ``query``. Gmail returns newest first."""
        message_ids: list[str] = []
        page_token: str | None = None

        while True:
            kwargs: dict[str, Any] = {"userId": self._user_id, "q": query, "maxResults": 500}
            if page_token:
                kwargs["pageToken"] = page_token

            request = self.service.users().messages().list(**kwargs)
            response = self._execute_with_retry(request, "list messages")

            message_ids.extend(msg["id"] for msg in response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return message_ids

    def fetch_messages(self, cursor: str | None, limit: int) -> FetchResult:
        query = self._build_query(cursor)
        message_ids = self._list_message_ids(query)
        message_ids.reverse()
        selected = message_ids[:limit]
        logger.info(
            "Gmail %s: %d messages match %r, fetching %d",
            self._account.id, len(message_ids), query, len(selected),
        )
        return FetchResult(self._iter_records(selected), cursor)

    def _iter_records(self, message_ids: list[str]) -> Iterator[FetchedMessage | RecordError]:
        for message_id in message_ids:
            yield self._fetch_record(message_id)

    def _fetch_record(self, message_id: str) -> FetchedMessage | RecordError:
        request = (
            self.service.users()
            .messages()
            .get(userId=self._user_id, id=message_id, format="raw")
        )
        try:
            data = self._execute_with_retry(request, f"fetch message {message_id}")
        except TerminalProviderError as e:
            if isinstance(e, AuthError):
                raise
            # Deleted between list and get, or otherwise unreadable
            return RecordError(message_id, str(e))

        position = str(data.get("internalDate", ""))
        raw_data = data.get("raw")
        if not raw_data:
            return RecordError(message_id, "Message has no raw content", position)

        labels = tuple(data.get("labelIds", []))
        try:
            return self._parser.parse(
                self._parser.decode_base64url(raw_data),
                message_id,
                folder=self._determine_folder(labels),
                labels=tuple(lbl for lbl in labels if lbl not in _SYSTEM_LABELS),
                flags=MessageFlags(
                    read="UNREAD" not in labels,
                    starred="STARRED" in labels,
                    spam="SPAM" in labels,
                ),
                position=position,
            )
        except (MalformedRecordError, ValueError) as e:
            return RecordError(message_id, str(e), position)

    @staticmethod
    def _determine_folder(labels: tuple[str, ...]) -> str:
        if "SENT" in labels:
            return "Sent"
        if "DRAFT" in labels:
            return "Drafts"
        if "TRASH" in labels:
            return "Trash"
        if "SPAM" in labels:
            return "Spam"
        return "INBOX"

    def send_message(self, message: OutgoingMessage) -> str:
        mime = EmailMessage()
        mime["From"] = self._credentials.email
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        if message.bcc:
            mime["Bcc"] = ", ".join(message.bcc)
        mime["Subject"] = message.subject
        if message.in_reply_to:
            mime["In-Reply-To"] = message.in_reply_to
        if message.references:
            mime["References"] = " ".join(message.references)
        mime.set_content(message.body_text or "")
        if message.body_html:
            mime.add_alternative(message.body_html, subtype="html")

        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")
        request = self.service.users().messages().send(userId=self._user_id, body={"raw": raw})
        response = self._execute_with_retry(request, "send message")
        logger.info("Sent Gmail message %s for %s", response.get("id"), self._account.id)
        return response.get("id", "")

    def _modify(self, provider_message_id: str, add: list[str], remove: list[str]) -> None:
        body: dict[str, list[str]] = {}
        if add:
            body["addLabelIds"] = add
        if remove:
            body["removeLabelIds"] = remove
        if not body:
            return
        request = (
            self.service.users()
            .messages()
            .modify(userId=self._user_id, id=provider_message_id, body=body)
        )
        self._execute_with_retry(request, f"modify message {provider_message_id}")

    def set_flags(
        self,
        provider_message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
    ) -> None:
        add: list[str] = []
        remove: list[str] = []
        if read is not None:
            (remove if read else add).append("UNREAD")
        if starred is not None:
            (add if starred else remove).append("STARRED")
        self._modify(provider_message_id, add, remove)

    def move(self, provider_message_id: str, folder: str) -> None:
        label_id = _FOLDER_LABELS.get(folder, folder)
        remove = [] if label_id == "INBOX" else ["INBOX"]
        self._modify(provider_message_id, [label_id], remove)

    def delete(self, provider_message_id: str) -> None:
        request = (
            self.service.users()
            .messages()
            .trash(userId=self._user_id, id=provider_message_id)
        )
        self._execute_with_retry(request, f"trash message {provider_message_id}")

    def list_folders(self) -> list[str]:
        request = self.service.users().labels().list(userId=self._user_id)
        results = self._execute_with_retry(request, "list labels")
        return [lbl["name"] for lbl in results.get("labels", []) if lbl.get("name")]
