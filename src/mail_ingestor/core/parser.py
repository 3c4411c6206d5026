"""RFC 822 message parser: MIME tree walking, header extraction, attachments."""

from __future__ import annotations

import base64
import email
import logging
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime

from mail_ingestor.core.exceptions import MalformedRecordError
from mail_ingestor.core.models import (
    EmailBody,
    FetchedAttachment,
    FetchedMessage,
    MessageFlags,
)

logger = logging.getLogger(__name__)

# A record with none of these is not a mail message
_IDENTIFYING_HEADERS = ("from", "subject", "message-id", "date")


class MimeParser:
    """Parses raw RFC 822 bytes into FetchedMessage objects."""

    def parse(
        self,
        raw: bytes,
        provider_message_id: str,
        *,
        folder: str = "INBOX",
        labels: tuple[str, ...] = (),
        flags: MessageFlags | None = None,
        position: str = "",
    ) -> FetchedMessage:
        """Parse a raw message into a FetchedMessage.

        Args:
            raw: Complete RFC 822 message bytes.
            provider_message_id: The provider's id for this record.
            folder: Folder the provider reports for the record.
            labels: Provider labels, already stripped of folder/flag labels.
            flags: Read/starred/spam state reported by the provider.
            position: Cursor value just past this record.

        Returns:
            Parsed FetchedMessage.

        Raises:
            MalformedRecordError: If the bytes are not a readable message.
        """
        if not raw:
            raise MalformedRecordError(f"Message {provider_message_id} has no content")

        try:
            msg = email.message_from_bytes(raw, policy=policy.default)
            headers = {name.lower(): str(value) for name, value in msg.items()}
            if not any(name in headers for name in _IDENTIFYING_HEADERS):
                raise MalformedRecordError(
                    f"Message {provider_message_id} has no identifying headers"
                )

            body, attachments = self._walk_parts(msg)

            return FetchedMessage(
                provider_message_id=provider_message_id,
                raw=raw,
                subject=headers.get("subject", "").strip(),
                sender=headers.get("from", "").strip(),
                to=self._addresses(msg, "to"),
                cc=self._addresses(msg, "cc"),
                date=self._parse_date(headers.get("date", "")),
                message_id_header=headers.get("message-id", "").strip(),
                in_reply_to=headers.get("in-reply-to", "").strip(),
                references=tuple(headers.get("references", "").split()),
                body=body,
                attachments=attachments,
                folder=folder,
                labels=labels,
                flags=flags or MessageFlags(),
                headers=headers,
                position=position,
            )
        except MalformedRecordError:
            raise
        except Exception as e:
            raise MalformedRecordError(
                f"Failed to parse message {provider_message_id}: {e}"
            ) from e

    def _walk_parts(
        self, msg: EmailMessage
    ) -> tuple[EmailBody, tuple[FetchedAttachment, ...]]:
        """Walk the MIME tree collecting the first text/html bodies and all attachments."""
        plain_text: str | None = None
        html: str | None = None
        attachments: list[FetchedAttachment] = []

        for part in msg.walk():
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            filename = part.get_filename()
            is_attachment = part.get_content_disposition() == "attachment" or bool(filename)

            if is_attachment:
                attachments.append(
                    FetchedAttachment(
                        filename=filename or "unnamed",
                        content_type=content_type,
                        content=part.get_payload(decode=True) or b"",
                        content_id=(part.get("Content-ID") or "").strip("<> "),
                    )
                )
            elif content_type == "text/plain" and plain_text is None:
                plain_text = self._decode_text(part)
            elif content_type == "text/html" and html is None:
                html = self._decode_text(part)

        return EmailBody(plain_text=plain_text, html=html), tuple(attachments)

    @staticmethod
    def _decode_text(part: EmailMessage) -> str:
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError):
            # Unknown or lying charset declarations
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")

    @staticmethod
    def _addresses(msg: EmailMessage, header: str) -> tuple[str, ...]:
        values = [str(v) for v in msg.get_all(header, [])]
        return tuple(addr for _, addr in getaddresses(values) if addr)

    @staticmethod
    def _parse_date(date_str: str) -> datetime | None:
        """Parse an RFC 2822 date string into an aware datetime.

        Returns None if the header is missing or unparseable.
        """
        if not date_str:
            return None
        try:
            parsed = parsedate_to_datetime(date_str)
        except Exception:
            logger.warning("Failed to parse date: %s", date_str)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def decode_base64url(data: str) -> bytes:
        """Decode base64url data as returned by the Gmail API (RFC 4648 §5)."""
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded)
