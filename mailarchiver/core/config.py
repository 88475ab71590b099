"""Archiver configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List


class ArchiverSettings(BaseSettings):
    """Mail archiver configuration."""

    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mail_archive", description="Database name")

    # Mail Sync Settings
    mail_sync_enabled: bool = Field(default=True, description="Run the periodic sync scheduler")
    mail_sync_interval_minutes: int = Field(default=5, description="Minutes between scheduled sync rounds")
    sync_timeout_minutes: int = Field(default=60, description="Upper bound for one account sync")
    connection_timeout_seconds: int = Field(default=180, description="Mail server connect timeout")
    command_timeout_seconds: int = Field(default=300, description="Timeout for a single mail command")
    always_force_full_sync: bool = Field(default=False, description="Ignore checkpoints on every sync")
    ignore_self_signed_cert: bool = Field(default=False, description="Skip TLS verification for IMAP")
    account_pause_seconds: float = Field(default=10.0, description="Pause between accounts in a sync round")
    sync_lookback_hours: int = Field(default=12, description="Overlap subtracted from the checkpoint")

    # Batch Operation Settings
    batch_size: int = Field(default=50, description="Messages per processing batch")
    pause_between_emails_ms: int = Field(default=50)
    pause_between_batches_ms: int = Field(default=250)
    deletion_batch_size: int = Field(default=1000)
    import_pause_every: int = Field(default=10, description="Import pauses after this many messages")
    import_pause_ms: int = Field(default=100)
    eml_import_default_folder: str = Field(default="INBOX", description="Folder for .eml files at the top of an archive")

    # Job Settings
    job_poll_interval_seconds: float = Field(default=1.0)
    import_poll_interval_seconds: float = Field(default=0.1)
    job_error_backoff_seconds: float = Field(default=5.0)
    job_cleanup_interval_hours: float = Field(default=1.0)
    sync_job_retention_hours: float = Field(default=24.0)
    restore_job_retention_hours: float = Field(default=24.0)
    deletion_job_retention_hours: float = Field(default=24.0 * 7)
    import_job_retention_hours: float = Field(default=24.0)
    eml_import_job_retention_hours: float = Field(default=24.0)
    account_deletion_job_retention_hours: float = Field(default=24.0)
    sync_auto_retry: bool = Field(default=False, description="Resubmit failed sync jobs")
    sync_max_retry_attempts: int = Field(default=3)
    sync_retry_delay_seconds: int = Field(default=30, description="Base of the exponential retry delay")

    # Deduplication Settings
    dedup_time_tolerance_seconds: float = Field(
        default=2.0,
        description="Timestamp window for heuristic duplicate matching"
    )
    dedup_heuristic_for_identified: bool = Field(
        default=True,
        description="Also apply the heuristic to messages carrying a message id"
    )

    # Content Limits
    max_body_text_bytes: int = Field(default=500 * 1024)
    max_body_html_bytes: int = Field(default=1_000_000)
    max_record_bytes: int = Field(default=900_000, description="Aggregate ceiling for indexed fields")
    record_buffer_bytes: int = Field(default=10 * 1024)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> ArchiverSettings:
    """Load archiver settings from the environment."""
    return ArchiverSettings()


settings = get_settings()
