"""Asynchronous search indexing of stored messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mail_ingestor.core.converter import DocumentConverter
from mail_ingestor.core.exceptions import ConversionError, MalformedRecordError
from mail_ingestor.core.models import EmailBody, StoredMessage
from mail_ingestor.core.parser import MimeParser
from mail_ingestor.pipeline.queue import LocalJobQueue, QueuedJob
from mail_ingestor.search.index import SearchIndex
from mail_ingestor.storage.messages import MessageStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexTask:
    message_id: str
    action: str = "upsert"


class IndexPipeline:
    """Pushes stored messages into the search index from its own queue.

    Index failures are retried within the index queue's budget and never
    reach the sync job that stored the message.
    """

    def __init__(
        self,
        messages: MessageStore,
        index: SearchIndex,
        queue: LocalJobQueue,
        *,
        converter: DocumentConverter | None = None,
        parser: MimeParser | None = None,
    ) -> None:
        self._messages = messages
        self._index = index
        self._queue = queue
        self._converter = converter or DocumentConverter()
        self._parser = parser or MimeParser()

    @property
    def queue(self) -> LocalJobQueue:
        return self._queue

    def enqueue(self, message_id: str) -> QueuedJob:
        return self._queue.enqueue(IndexTask(message_id))

    def enqueue_removal(self, message_id: str) -> QueuedJob:
        return self._queue.enqueue(IndexTask(message_id, action="delete"))

    def handle(self, job: QueuedJob) -> None:
        task: IndexTask = job.payload
        if task.action == "delete":
            self.remove(task.message_id)
        else:
            self.index_message(task.message_id)

    def index_message(self, message_id: str) -> bool:
        """Build and upsert the document for a stored message.

        Returns False if the message no longer exists or has nothing to index.

        Raises:
            SearchIndexError: If the index rejected the write (retryable).
        """
        message = self._messages.get(message_id)
        if message is None:
            logger.warning("Message %s not found, skipping index", message_id)
            return False

        body = self._load_body(message)
        names = [attachment.filename for attachment in self._messages.attachments(message.id)]
        try:
            document = self._converter.convert(message, body, names)
        except ConversionError as e:
            logger.warning("Not indexing %s: %s", message_id, e)
            return False

        self._index.upsert(message.id, document)
        logger.debug("Indexed message %s", message_id)
        return True

    def _load_body(self, message: StoredMessage) -> EmailBody:
        raw = self._messages.read_raw(message)
        try:
            return self._parser.parse(raw, message.provider_message_id).body
        except MalformedRecordError as e:
            logger.warning("Indexing %s without body: %s", message.id, e)
            return EmailBody()

    def remove(self, message_id: str) -> None:
        self._index.delete(message_id)

    def start(self, concurrency: int) -> None:
        self._queue.process(self.handle, concurrency)

    def stop(self, timeout: float | None = None) -> None:
        self._queue.stop(timeout)

    def drain(self) -> int:
        """Index everything queued on the calling thread."""
        return self._queue.drain(self.handle)
