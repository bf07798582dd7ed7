"""Mail intake configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
"""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings


class ImapConfig(BaseSettings):
    """IMAP server connection settings and per-operation timeouts."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to scan")

    connect_timeout_seconds: float = Field(
        default=10.0,
        description="TCP (and TLS) connect timeout",
    )
    greeting_timeout_seconds: float = Field(
        default=60.0,
        description="Wait for the server greeting after connecting",
    )
    auth_timeout_seconds: float = Field(
        default=120.0,
        description="LOGIN + EXAMINE timeout",
    )
    step_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for SEARCH and metadata FETCH commands",
    )
    fetch_timeout_seconds: float = Field(
        default=120.0,
        description="Timeout for fetching the bytes of one MIME part",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password.get_secret_value())


class S3Config(BaseSettings):
    """S3 storage settings for ingested documents."""

    model_config = {"env_prefix": "S3_"}

    bucket: str = Field(default="", description="S3 bucket name")
    prefix: str = Field(
        default="documents/email",
        description="S3 key prefix for uploaded attachments",
    )
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )


class DatabaseConfig(BaseSettings):
    """Metadata database holding ingest state, ledger, dedup index and records."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./mail_intake.db",
        description="Async SQLAlchemy URL",
    )
    create_tables: bool = Field(
        default=True,
        description="Create missing tables on startup",
    )


class IngestConfig(BaseSettings):
    """Batch and scheduling knobs for the ingestion cycle."""

    model_config = {"env_prefix": "INGEST_"}

    enabled: bool = Field(default=False, description="Run the periodic ingestion timer")
    poll_interval_seconds: float = Field(
        default=120.0,
        description="Seconds between scheduler ticks (floored at 30)",
    )
    scan_limit: int = Field(default=100, ge=1, description="Newest messages considered per cycle")
    max_attempts: int = Field(default=5, ge=1, description="Messages attempted per cycle")
    wall_clock_budget_seconds: float = Field(
        default=300.0,
        description="Stop starting new messages once a batch has run this long",
    )
    max_attachment_bytes: int = Field(
        default=20 * 1024 * 1024,
        description="Hard cap on the decoded size of one attachment",
    )
    backoff_minutes: list[int] = Field(
        default_factory=lambda: [5, 15, 30, 60],
        description="Delay before retrying after the 1st, 2nd, ... consecutive failure",
    )
    category: str = Field(
        default="invoice",
        description="Owner category used for dedup and linked records",
    )
    sample_size: int = Field(default=20, description="Recent messages kept for /status")

    @field_validator("poll_interval_seconds")
    @classmethod
    def _floor_poll_interval(cls, value: float) -> float:
        return max(value, 30.0)

    @field_validator("backoff_minutes")
    @classmethod
    def _check_backoff_table(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("backoff table must not be empty")
        if any(b < a for a, b in zip(value, value[1:])):
            raise ValueError("backoff table must be non-decreasing")
        return value


class ControlConfig(BaseSettings):
    """HTTP control surface: health, status and the manual trigger."""

    model_config = {"env_prefix": "CONTROL_"}

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8080, description="Bind port")
    trigger_enabled: bool = Field(
        default=False,
        description="Expose POST /trigger (operational debugging only)",
    )
    trigger_secret: SecretStr | None = Field(
        default=None,
        description="Shared secret required in the X-Intake-Trigger-Secret header",
    )


class IntakeConfig(BaseSettings):
    """Root configuration for the mail intake service.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "INTAKE_"}

    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    imap: ImapConfig = Field(default_factory=ImapConfig)
    s3: S3Config = Field(default_factory=S3Config)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
