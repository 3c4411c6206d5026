"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class MailIngestorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Local storage
    database_path: Path = Path("data/mail_ingestor.db")
    blob_dir: Path = Path("data/blobs")
    secrets_dir: Path = Path("data/secrets")
    search_index_path: Path = Path("data/search.db")

    # Scheduling
    sync_interval_minutes: int = 5
    scheduler_tick_seconds: float = 60.0
    sync_concurrency: int = 10
    index_concurrency: int = 5

    # Sync job retry policy
    max_attempts: int = 3
    initial_backoff_seconds: float = 2.0
    max_backoff_seconds: float = 60.0

    # Index job retry policy (separate failure domain)
    index_max_attempts: int = 5
    index_initial_backoff_seconds: float = 2.0

    # Per-account lease
    lease_timeout_seconds: float = 600.0
    lease_retry_delay_seconds: float = 5.0
    lease_poll_seconds: float = 0.05

    # Fetching
    fetch_limit: int = 100
    initial_lookback_days: int = 30

    # Gmail OAuth client (consent flow itself happens elsewhere)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"

    # Gmail API rate limiting & retry
    gmail_max_retries: int = 5
    gmail_initial_backoff_seconds: float = 1.0
    gmail_max_backoff_seconds: float = 60.0
    gmail_num_retries: int = 3

    # IMAP
    imap_folder: str = "INBOX"
    imap_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.secrets_dir.mkdir(parents=True, exist_ok=True)
        self.search_index_path.parent.mkdir(parents=True, exist_ok=True)
