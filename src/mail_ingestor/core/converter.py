"""Search document builder using trafilatura with plain text fallback."""

from __future__ import annotations

import logging
from typing import Any

import trafilatura

from mail_ingestor.core.exceptions import ConversionError
from mail_ingestor.core.models import EmailBody, StoredMessage

logger = logging.getLogger(__name__)


class DocumentConverter:
    """Convert a stored message and its body into a search index document."""

    def convert(
        self,
        message: StoredMessage,
        body: EmailBody,
        attachment_names: list[str] | None = None,
    ) -> dict[str, Any]:
        """Build the index document for a message.

        Strategy:
        1. If HTML available, extract text via trafilatura (favor_recall=True for email layouts).
        2. If trafilatura returns None or no HTML, fall back to plain text.
        3. A message with neither body still indexes its headers.

        Raises:
            ConversionError: If the message has no indexable content at all.
        """
        text = self._extract_text(body) or ""
        if not text and not message.subject and not message.sender:
            raise ConversionError(f"No indexable content for message {message.id}")

        return {
            "message_id": message.id,
            "account_id": message.account_id,
            "thread_id": message.thread_id,
            "subject": message.subject,
            "sender": message.sender,
            "recipients": [*message.to, *message.cc],
            "date": message.date.isoformat() if message.date else None,
            "folder": message.folder,
            "labels": list(message.labels),
            "is_read": message.flags.read,
            "is_starred": message.flags.starred,
            "is_spam": message.flags.spam,
            "attachment_names": attachment_names or [],
            "body": text,
        }

    def _extract_text(self, body: EmailBody) -> str | None:
        """Attempt to extract readable text from the body."""
        result: str | None = None

        if body.html:
            try:
                result = trafilatura.extract(
                    body.html,
                    output_format="txt",
                    favor_recall=True,
                    include_links=True,
                    include_tables=True,
                )
            except Exception as e:
                logger.warning("Trafilatura extraction failed: %s", e)
                result = None

        if result is None and body.plain_text:
            result = body.plain_text

        return result
