"""Tests for MessageStore: dedup, threading, blobs and attachments."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import BASE_DATE
from mail_ingestor.core.exceptions import StorageError
from mail_ingestor.core.models import EmailBody, FetchedMessage
from mail_ingestor.storage.accounts import AccountRepository
from mail_ingestor.storage.blobs import FilesystemBlobStore
from mail_ingestor.storage.database import Database
from mail_ingestor.storage.messages import MessageStore, normalize_subject, sanitize_key_part

MakeMessage = Callable[..., FetchedMessage]


@pytest.fixture
def blobs(tmp_path: Path) -> FilesystemBlobStore:
    return FilesystemBlobStore(tmp_path / "blobs")


@pytest.fixture
def store(db: Database, blobs: FilesystemBlobStore) -> MessageStore:
    repo = AccountRepository(db)
    repo.register_account("fake", "one@example.com", account_id="acct-1")
    repo.register_account("fake", "two@example.com", account_id="acct-2")
    return MessageStore(db, blobs)


class TestNormalizeSubject:
    @pytest.mark.parametrize(
        ("subject", "expected"),
        [
            ("Hello", "hello"),
            ("Re: Hello", "hello"),
            ("RE: re: Fwd: Hello", "hello"),
            ("Fw:Hello", "hello"),
            ("Re[2]: Hello", "hello"),
            ("  Hello  ", "hello"),
            ("Regarding things", "regarding things"),
            ("", ""),
        ],
    )
    def test_normalize(self, subject: str, expected: str) -> None:
        assert normalize_subject(subject) == expected

    def test_truncated(self) -> None:
        assert len(normalize_subject("x" * 1000)) == 255

    def test_sanitize_key_part(self) -> None:
        assert sanitize_key_part("INBOX:777:12") == "INBOX_777_12"
        assert sanitize_key_part("") == "_"


class TestStore:
    def test_persists_metadata_and_blob(self, store: MessageStore, make_message: MakeMessage) -> None:
        fetched = make_message("m1", 1, subject="Hello", to="Bob <bob@example.com>")
        stored, created = store.store("acct-1", fetched)

        assert created is True
        assert stored.provider_message_id == "m1"
        assert stored.subject == "Hello"
        assert stored.to == ("bob@example.com",)
        assert stored.size == len(fetched.raw)
        assert stored.date == BASE_DATE + timedelta(minutes=1)
        assert stored.body_preview == "Hello, plain text."
        assert stored.blob_key == "messages/acct-1/2024/01/m1.eml"
        assert store.read_raw(stored) == fetched.raw

    def test_duplicate_is_noop(self, store: MessageStore, make_message: MakeMessage) -> None:
        first, created = store.store("acct-1", make_message("m1", 1))
        second, created_again = store.store("acct-1", make_message("m1", 1))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert store.count_for_account("acct-1") == 1
        assert store.thread(first.thread_id).message_count == 1

    def test_lost_race_returns_winner(self, store: MessageStore, make_message: MakeMessage) -> None:
        # Both writers pass the pre-check before either has inserted
        with patch.object(store, "get_by_provider_id", return_value=None):
            first, created = store.store("acct-1", make_message("m1", 1))
            second, created_again = store.store("acct-1", make_message("m1", 1))

        assert (created, created_again) == (True, False)
        assert second.id == first.id
        assert store.count_for_account("acct-1") == 1
        assert store.thread(first.thread_id).message_count == 1

    def test_concurrent_stores_keep_one_row(
        self, store: MessageStore, make_message: MakeMessage
    ) -> None:
        message = make_message("m1", 1)
        barrier = threading.Barrier(4, timeout=5)
        results: list[tuple[str, bool]] = []
        guard = threading.Lock()

        def worker() -> None:
            barrier.wait()
            stored, created = store.store("acct-1", message)
            with guard:
                results.append((stored.id, created))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 4
        assert len({message_id for message_id, _ in results}) == 1
        assert sum(created for _, created in results) == 1
        assert store.count_for_account("acct-1") == 1
        assert store.thread(store.get(results[0][0]).thread_id).message_count == 1

    def test_dedup_is_per_account(self, store: MessageStore, make_message: MakeMessage) -> None:
        store.store("acct-1", make_message("m1", 1))
        _, created = store.store("acct-2", make_message("m1", 1))
        assert created is True
        assert store.count() == 2

    def test_undated_message_key(self, store: MessageStore) -> None:
        raw = b"From: a@example.com\r\nSubject: no date\r\n\r\nbody\r\n"
        fetched = FetchedMessage(provider_message_id="m9", raw=raw, subject="no date", sender="a@example.com")
        stored, _ = store.store("acct-1", fetched)
        assert stored.blob_key == "messages/acct-1/undated/m9.eml"
        assert stored.date is not None

    def test_blob_failure_leaves_no_row(self, db: Database, store: MessageStore, make_message: MakeMessage) -> None:
        broken = MagicMock()
        broken.put.side_effect = StorageError("disk full")
        failing = MessageStore(db, broken)

        with pytest.raises(StorageError):
            failing.store("acct-1", make_message("m1", 1))
        assert store.count() == 0

    def test_html_only_preview(self, store: MessageStore) -> None:
        fetched = FetchedMessage(
            provider_message_id="m1",
            raw=b"x",
            sender="a@example.com",
            body=EmailBody(html="<p>Rich   <b>text</b></p>"),
        )
        stored, _ = store.store("acct-1", fetched)
        assert stored.body_preview == "Rich text"


class TestThreading:
    def test_reply_joins_parent_thread(self, store: MessageStore, make_message: MakeMessage) -> None:
        parent, _ = store.store("acct-1", make_message("m1", 1, subject="Budget"))
        reply, _ = store.store(
            "acct-1",
            make_message("m2", 2, subject="Something else", in_reply_to="<m1@example.com>"),
        )
        assert reply.thread_id == parent.thread_id

    def test_subject_fallback(self, store: MessageStore, make_message: MakeMessage) -> None:
        first, _ = store.store("acct-1", make_message("m1", 1, subject="Budget"))
        second, _ = store.store("acct-1", make_message("m2", 2, subject="RE: budget"))
        assert second.thread_id == first.thread_id

    def test_unknown_parent_falls_back_to_subject(
        self, store: MessageStore, make_message: MakeMessage
    ) -> None:
        first, _ = store.store("acct-1", make_message("m1", 1, subject="Budget"))
        second, _ = store.store(
            "acct-1", make_message("m2", 2, subject="Re: Budget", in_reply_to="<missing@x>")
        )
        assert second.thread_id == first.thread_id

    def test_different_subjects_split(self, store: MessageStore, make_message: MakeMessage) -> None:
        first, _ = store.store("acct-1", make_message("m1", 1, subject="Budget"))
        second, _ = store.store("acct-1", make_message("m2", 2, subject="Lunch"))
        assert second.thread_id != first.thread_id

    def test_empty_subjects_never_merge(self, store: MessageStore, make_message: MakeMessage) -> None:
        first, _ = store.store("acct-1", make_message("m1", 1, subject=""))
        second, _ = store.store("acct-1", make_message("m2", 2, subject=""))
        assert second.thread_id != first.thread_id

    def test_thread_aggregates(self, store: MessageStore, make_message: MakeMessage) -> None:
        later, _ = store.store(
            "acct-1", make_message("m2", 5, subject="Budget", sender="Carol <Carol@Example.com>")
        )
        store.store("acct-1", make_message("m1", 1, subject="Re: Budget", cc="dave@example.com"))

        thread = store.thread(later.thread_id)
        assert thread.message_count == 2
        assert thread.normalized_subject == "budget"
        assert thread.first_message_at == BASE_DATE + timedelta(minutes=1)
        assert thread.last_message_at == BASE_DATE + timedelta(minutes=5)
        assert set(thread.participants) == {
            "alice@example.com",
            "bob@example.com",
            "carol@example.com",
            "dave@example.com",
        }
        assert [m.provider_message_id for m in store.thread_messages(thread.id)] == ["m1", "m2"]

    def test_count_matches_messages(self, store: MessageStore, make_message: MakeMessage) -> None:
        for i in range(4):
            stored, _ = store.store("acct-1", make_message(f"m{i}", i, subject="Status"))
        thread = store.thread(stored.thread_id)
        assert thread.message_count == len(store.thread_messages(thread.id)) == 4


class TestAttachments:
    def test_stored_with_checksum(
        self, store: MessageStore, make_message: MakeMessage, blobs: FilesystemBlobStore
    ) -> None:
        fetched = make_message(
            "m1",
            1,
            attachments=[
                ("report.pdf", "application/pdf", b"%PDF-1.4"),
                ("notes.txt", "text/plain", b"some notes"),
            ],
        )
        stored, _ = store.store("acct-1", fetched)
        attachments = store.attachments(stored.id)

        assert stored.has_attachments
        assert [a.filename for a in attachments] == ["report.pdf", "notes.txt"]
        assert attachments[0].blob_key == "attachments/acct-1/m1/0_report.pdf"
        assert attachments[0].size == len(b"%PDF-1.4")
        assert all(store.verify_attachment(a) for a in attachments)

    def test_verify_detects_corruption(
        self, store: MessageStore, make_message: MakeMessage, blobs: FilesystemBlobStore
    ) -> None:
        stored, _ = store.store(
            "acct-1", make_message("m1", 1, attachments=[("a.bin", "application/octet-stream", b"abc")])
        )
        attachment = store.attachments(stored.id)[0]
        blobs.put(attachment.blob_key, b"tampered")
        assert store.verify_attachment(attachment) is False


class TestUpdates:
    def test_update_flags(self, store: MessageStore, make_message: MakeMessage) -> None:
        stored, _ = store.store("acct-1", make_message("m1", 1))
        updated = store.update_flags(stored.id, read=True, spam=True)

        assert updated.flags.read is True
        assert updated.flags.starred is False
        assert updated.flags.spam is True

    def test_update_flags_noop(self, store: MessageStore, make_message: MakeMessage) -> None:
        stored, _ = store.store("acct-1", make_message("m1", 1))
        assert store.update_flags(stored.id) == stored

    def test_update_folder(self, store: MessageStore, make_message: MakeMessage) -> None:
        stored, _ = store.store("acct-1", make_message("m1", 1))
        store.update_folder(stored.id, "Archive")
        assert store.get(stored.id).folder == "Archive"

    def test_get_unknown(self, store: MessageStore) -> None:
        assert store.get("missing") is None
        assert store.get_by_provider_id("acct-1", "missing") is None
