"""Dataclasses for the Mail Ingestor domain model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

# Account status: active ⇄ syncing → active | auth_failed; disabled is set by operators
ACCOUNT_STATUSES = frozenset({"active", "syncing", "auth_failed", "disabled"})

# SyncJob state machine: pending → running → completed | failed
JOB_STATES = frozenset({"pending", "running", "completed", "failed"})
TERMINAL_JOB_STATES = frozenset({"completed", "failed"})

JOB_TRIGGERS = frozenset({"scheduled", "on_demand"})


@dataclass(frozen=True)
class Account:
    """A provider mailbox being synchronized."""

    id: str
    provider: str
    address: str
    status: str = "active"
    sync_cursor: str | None = None
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None
    display_name: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SyncJob:
    """One attempt cycle at synchronizing an account."""

    id: str
    account_id: str
    state: str = "pending"
    attempts: int = 0
    trigger: str = "scheduled"
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    messages_synced: int = 0
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES


@dataclass(frozen=True)
class AccountCredentials:
    """Snapshot of an account's credentials as held by the secret store.

    ``version`` increases on every persisted refresh so that concurrent
    holders can tell whether the snapshot they hold is stale.
    """

    provider: str
    email: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    username: str = ""
    password: str = ""
    host: str = ""
    port: int = 993
    version: int = 0
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def with_tokens(
        self, access_token: str, refresh_token: str | None, expires_at: datetime | None
    ) -> AccountCredentials:
        """Return the next version carrying freshly issued tokens."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            version=self.version + 1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "email": self.email,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "username": self.username,
            "password": self.password,
            "host": self.host,
            "port": self.port,
            "version": self.version,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountCredentials:
        expires_at = data.get("expires_at")
        return cls(
            provider=data["provider"],
            email=data.get("email", ""),
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            username=data.get("username", ""),
            password=data.get("password", ""),
            host=data.get("host", ""),
            port=int(data.get("port", 993)),
            version=int(data.get("version", 0)),
            extra=dict(data.get("extra") or {}),
        )


@dataclass(frozen=True)
class EmailBody:
    """Parsed email body content. Either field may be missing."""

    plain_text: str | None = None
    html: str | None = None


@dataclass(frozen=True)
class MessageFlags:
    read: bool = False
    starred: bool = False
    spam: bool = False


@dataclass(frozen=True)
class FetchedAttachment:
    """Attachment payload as extracted from a fetched message."""

    filename: str
    content_type: str
    content: bytes
    content_id: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class FetchedMessage:
    """A provider record normalized by an adapter, ready for the message store.

    ``position`` is the adapter-specific cursor value just past this record.
    """

    provider_message_id: str
    raw: bytes
    subject: str = ""
    sender: str = ""
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    date: datetime | None = None
    message_id_header: str = ""
    in_reply_to: str = ""
    references: tuple[str, ...] = ()
    body: EmailBody = field(default_factory=EmailBody)
    attachments: tuple[FetchedAttachment, ...] = ()
    folder: str = "INBOX"
    labels: tuple[str, ...] = ()
    flags: MessageFlags = field(default_factory=MessageFlags)
    headers: dict[str, str] = field(default_factory=dict, compare=False)
    position: str = ""

    @property
    def size(self) -> int:
        return len(self.raw)


@dataclass(frozen=True)
class RecordError:
    """A provider record that was skipped during a fetch."""

    provider_message_id: str
    reason: str
    position: str = ""


@dataclass(frozen=True)
class Thread:
    id: str
    normalized_subject: str
    participants: tuple[str, ...] = ()
    message_count: int = 0
    first_message_at: datetime | None = None
    last_message_at: datetime | None = None


@dataclass(frozen=True)
class StoredMessage:
    """Message metadata row as persisted by the message store."""

    id: str
    account_id: str
    provider_message_id: str
    thread_id: str
    blob_key: str
    size: int
    folder: str = "INBOX"
    flags: MessageFlags = field(default_factory=MessageFlags)
    message_id_header: str = ""
    subject: str = ""
    sender: str = ""
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    date: datetime | None = None
    in_reply_to: str = ""
    references: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    headers: dict[str, str] = field(default_factory=dict, compare=False)
    has_attachments: bool = False
    body_preview: str = ""
    created_at: datetime | None = None


@dataclass(frozen=True)
class Attachment:
    id: str
    message_id: str
    filename: str
    content_type: str
    size: int
    blob_key: str
    checksum: str
    created_at: datetime | None = None


@dataclass
class SyncProgress:
    """Mutable progress tracker for a running sync job."""

    account_id: str = ""
    messages_fetched: int = 0
    messages_stored: int = 0
    messages_duplicate: int = 0
    messages_skipped: int = 0
    index_enqueued: int = 0
    current_stage: str = "idle"
