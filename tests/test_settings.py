"""Tests for MailIngestorSettings."""

from __future__ import annotations

from pathlib import Path

import pytest

from mail_ingestor.config.settings import MailIngestorSettings


class TestDefaults:
    def test_defaults(self) -> None:
        settings = MailIngestorSettings(_env_file=None)
        assert settings.sync_interval_minutes == 5
        assert settings.sync_concurrency == 10
        assert settings.index_concurrency == 5
        assert settings.max_attempts == 3
        assert settings.fetch_limit == 100
        assert settings.log_level == "INFO"


class TestEnvironment:
    def test_prefixed_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAIL_SYNC_CONCURRENCY", "3")
        monkeypatch.setenv("MAIL_DATABASE_PATH", "/tmp/other.db")
        monkeypatch.setenv("MAIL_LOG_LEVEL", "DEBUG")

        settings = MailIngestorSettings(_env_file=None)
        assert settings.sync_concurrency == 3
        assert settings.database_path == Path("/tmp/other.db")
        assert settings.log_level == "DEBUG"

    def test_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("MAIL_FETCH_LIMIT=25\nUNRELATED=1\n")

        settings = MailIngestorSettings(_env_file=env_file)
        assert settings.fetch_limit == 25


class TestEnsureDirectories:
    def test_creates_data_directories(self, tmp_path: Path) -> None:
        settings = MailIngestorSettings(
            _env_file=None,
            database_path=tmp_path / "db" / "state.db",
            blob_dir=tmp_path / "blobs",
            secrets_dir=tmp_path / "secrets",
            search_index_path=tmp_path / "index" / "search.db",
        )
        settings.ensure_directories()

        assert (tmp_path / "db").is_dir()
        assert (tmp_path / "blobs").is_dir()
        assert (tmp_path / "secrets").is_dir()
        assert (tmp_path / "index").is_dir()
