"""Generic IMAP adapter over imaplib.

Provider message ids have the form ``<folder>:<uidvalidity>:<uid>`` and the
sync cursor is ``<uidvalidity>:<last uid>``. A UIDVALIDITY change
invalidates the cursor and the folder is re-read from the lookback window;
deduplication absorbs the overlap.
"""

from __future__ import annotations

import imaplib
import logging
import re
import ssl
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.exceptions import (
    AuthError,
    MalformedRecordError,
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
from mail_ingestor.providers.base import (
    ALL_CAPABILITIES,
    SEND_MESSAGE,
    FetchResult,
    ProviderAdapter,
    RateLimit,
)

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_LIST_LINE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delim>"[^"]*"|NIL) (?P<name>.+)')


def quote_mailbox_name(folder_name: str) -> str:
    escaped = folder_name.replace("\\", "\\\\").replace('"', r"\"")
    return f'"{escaped}"'


def parse_uid_search_data(data: object) -> list[int]:
    if not isinstance(data, list) or not data or not data[0]:
        return []
    raw = data[0]
    if isinstance(raw, str):
        raw = raw.encode("ascii", errors="ignore")
    return [int(uid) for uid in raw.split() if uid.isdigit()]


def imap_date(value: datetime) -> str:
    """Format a date for IMAP SEARCH without depending on the process locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class ImapAdapter(ProviderAdapter):
    """Adapter for any IMAP4rev1 server with password login."""

    provider_type = "imap"
    capabilities = ALL_CAPABILITIES - {SEND_MESSAGE}
    # Servers commonly cap clients at a handful of commands per second
    rate_limit = RateLimit(requests=5, per_seconds=1.0)

    def __init__(
        self,
        account: Account,
        credentials: AccountCredentials,
        settings: MailIngestorSettings,
        *,
        connection_factory: Callable[[], imaplib.IMAP4] | None = None,
    ) -> None:
        super().__init__(account, credentials, settings)
        self._connection_factory = connection_factory or self._open_ssl
        self._imap: imaplib.IMAP4 | None = None
        self._parser = MimeParser()
        self._folder = settings.imap_folder

    def _open_ssl(self) -> imaplib.IMAP4:
        return imaplib.IMAP4_SSL(
            self._credentials.host,
            self._credentials.port,
            ssl_context=ssl.create_default_context(),
            timeout=self._settings.imap_timeout_seconds,
        )

    def _connect(self) -> imaplib.IMAP4:
        if self._imap is not None:
            return self._imap
        username = self._credentials.username or self._credentials.email
        try:
            imap = self._connection_factory()
        except OSError as e:
            raise TransientProviderError(f"IMAP connect failed: {e}") from e
        try:
            imap.login(username, self._credentials.password)
        except imaplib.IMAP4.abort as e:
            raise TransientProviderError(f"IMAP connection dropped during login: {e}") from e
        except imaplib.IMAP4.error as e:
            raise AuthError(f"IMAP login rejected for {username}: {e}") from e
        except OSError as e:
            raise TransientProviderError(f"IMAP login failed: {e}") from e
        self._imap = imap
        return imap

    def _call(self, context: str, command: Callable[..., tuple[str, Any]], *args: Any) -> Any:
        """Run an imaplib command and classify its failure modes."""
        try:
            status, data = command(*args)
        except imaplib.IMAP4.abort as e:
            self._imap = None
            raise TransientProviderError(f"IMAP connection dropped during {context}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise TerminalProviderError(f"IMAP {context} failed: {e}") from e
        except OSError as e:
            self._imap = None
            raise TransientProviderError(f"Network error during IMAP {context}: {e}") from e
        if status != "OK":
            raise TerminalProviderError(f"IMAP {context} returned {status}: {data!r}")
        return data

    def _select(self, folder: str, *, readonly: bool) -> str:
        imap = self._connect()
        self._call(f"select {folder}", imap.select, quote_mailbox_name(folder), readonly)
        _code, data = imap.response("UIDVALIDITY")
        if data and data[0]:
            value = data[0]
            return value.decode("ascii", errors="replace") if isinstance(value, bytes) else str(value)
        return "0"

    def test_connection(self) -> bool:
        try:
            imap = self._connect()
        except AuthError as e:
            logger.error("IMAP connection test failed for %s: %s", self._account.id, e)
            return False
        self._call("noop", imap.noop)
        return True

    def fetch_messages(self, cursor: str | None, limit: int) -> FetchResult:
        uidvalidity = self._select(self._folder, readonly=True)

        last_uid = 0
        if cursor:
            cursor_validity, _, cursor_uid = cursor.partition(":")
            if cursor_validity == uidvalidity and cursor_uid.isdigit():
                last_uid = int(cursor_uid)
            else:
                logger.warning(
                    "UIDVALIDITY changed for %s (%s → %s), rescanning lookback window",
                    self._account.id, cursor_validity, uidvalidity,
                )

        if last_uid:
            criteria: tuple[str, ...] = ("UID", f"{last_uid + 1}:*")
        else:
            since = datetime.now(UTC) - timedelta(days=self._settings.initial_lookback_days)
            criteria = ("SINCE", imap_date(since))

        data = self._call("search", self._connect().uid, "SEARCH", None, *criteria)
        # "n:*" always matches the highest uid, even when it is below n
        uids = sorted(uid for uid in parse_uid_search_data(data) if uid > last_uid)[:limit]
        logger.info("IMAP %s: fetching %d messages from %s", self._account.id, len(uids), self._folder)
        return FetchResult(self._iter_records(uidvalidity, uids), cursor)

    def _iter_records(
        self, uidvalidity: str, uids: list[int]
    ) -> Iterator[FetchedMessage | RecordError]:
        for uid in uids:
            yield self._fetch_record(uidvalidity, uid)

    def _fetch_record(self, uidvalidity: str, uid: int) -> FetchedMessage | RecordError:
        provider_message_id = f"{self._folder}:{uidvalidity}:{uid}"
        position = f"{uidvalidity}:{uid}"
        try:
            data = self._call(f"fetch uid {uid}", self._connect().uid, "FETCH", str(uid), "(FLAGS RFC822)")
        except TerminalProviderError as e:
            return RecordError(provider_message_id, str(e), position)

        envelope = next((item for item in data or [] if isinstance(item, tuple)), None)
        if envelope is None:
            return RecordError(provider_message_id, "Server returned no message body", position)

        flags = {flag.decode("ascii", errors="ignore") for flag in imaplib.ParseFlags(envelope[0])}
        try:
            return self._parser.parse(
                envelope[1],
                provider_message_id,
                folder=self._folder,
                flags=MessageFlags(
                    read="\\Seen" in flags,
                    starred="\\Flagged" in flags,
                    spam="$Junk" in flags or "Junk" in flags,
                ),
                position=position,
            )
        except MalformedRecordError as e:
            return RecordError(provider_message_id, str(e), position)

    def _locate(self, provider_message_id: str) -> str:
        """Select the message's folder for writing and return its uid."""
        folder, uidvalidity, uid = provider_message_id.rsplit(":", 2)
        current = self._select(folder, readonly=False)
        if current != uidvalidity:
            raise TerminalProviderError(
                f"UIDVALIDITY of {folder} changed; {provider_message_id} no longer addressable"
            )
        return uid

    def set_flags(
        self,
        provider_message_id: str,
        *,
        read: bool | None = None,
        starred: bool | None = None,
    ) -> None:
        uid = self._locate(provider_message_id)
        imap = self._connect()
        if read is not None:
            self._call("store", imap.uid, "STORE", uid, "+FLAGS.SILENT" if read else "-FLAGS.SILENT", r"(\Seen)")
        if starred is not None:
            self._call("store", imap.uid, "STORE", uid, "+FLAGS.SILENT" if starred else "-FLAGS.SILENT", r"(\Flagged)")

    def move(self, provider_message_id: str, folder: str) -> None:
        uid = self._locate(provider_message_id)
        imap = self._connect()
        try:
            self._call("move", imap.uid, "MOVE", uid, quote_mailbox_name(folder))
            return
        except TerminalProviderError:
            logger.debug("Server lacks MOVE, falling back to COPY + EXPUNGE")
        self._call("copy", imap.uid, "COPY", uid, quote_mailbox_name(folder))
        self._call("store", imap.uid, "STORE", uid, "+FLAGS.SILENT", r"(\Deleted)")
        self._call("expunge", imap.expunge)

    def delete(self, provider_message_id: str) -> None:
        uid = self._locate(provider_message_id)
        imap = self._connect()
        self._call("store", imap.uid, "STORE", uid, "+FLAGS.SILENT", r"(\Deleted)")
        self._call("expunge", imap.expunge)

    def list_folders(self) -> list[str]:
        imap = self._connect()
        data = self._call("list", imap.list)
        folders: list[str] = []
        for line in data or []:
            if not isinstance(line, bytes):
                continue
            match = _LIST_LINE.match(line)
            if match:
                folders.append(match.group("name").decode("utf-8", errors="replace").strip('"'))
        return folders

    def close(self) -> None:
        if self._imap is None:
            return
        try:
            self._imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("IMAP logout failed for %s: %s", self._account.id, e)
        self._imap = None
