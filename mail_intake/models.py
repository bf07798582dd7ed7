"""Result and status models shared by the batch processor, scheduler and API."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ServiceStatus(str, Enum):
    """Runtime status of the intake service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Outcome(str, Enum):
    """Terminal outcome of one attachment, as written to the ledger."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why a message was skipped.  None of these are errors."""

    NO_ELIGIBLE_ATTACHMENT = "no_eligible_attachment"
    DUPLICATE_CONTENT = "duplicate_content"
    ALREADY_PROCESSED = "already_processed"


class CycleStatus(str, Enum):
    RAN = "ran"
    BACKOFF = "backoff"
    BUSY = "busy"
    ERROR = "error"


class BatchResult(BaseModel):
    """Aggregate counts for one batch over one mailbox."""

    mailbox: str
    attempted: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    new_cursor: int | None = Field(
        default=None,
        description="Highest UID attempted, or the incoming cursor if none were",
    )
    errors: list[str] = Field(default_factory=list)
    document_ids: list[str] = Field(default_factory=list)
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    timed_out: bool = False
    aborted: bool = Field(
        default=False,
        description="Batch stopped early on an infrastructure failure",
    )
    ok: bool = Field(default=True, description="False when the session could not be opened")
    error: str | None = None

    def add_skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skip_reasons[reason.value] = self.skip_reasons.get(reason.value, 0) + 1

    def add_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    @property
    def succeeded(self) -> bool:
        """Something was handled and nothing failed."""
        return (
            self.ok
            and self.failed == 0
            and not self.aborted
            and (self.processed > 0 or self.skipped > 0)
        )

    @property
    def is_failure(self) -> bool:
        return not self.ok or self.failed > 0 or self.aborted

    @property
    def first_error(self) -> str | None:
        if self.error:
            return self.error
        return self.errors[0] if self.errors else None


class IngestStateView(BaseModel):
    """Serializable view of one mailbox's persisted ingest state."""

    mailbox: str
    cursor: int | None = None
    attempts: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


class CycleResult(BaseModel):
    """What one scheduler invocation did."""

    mailbox: str
    status: CycleStatus
    batch: BatchResult | None = None
    before: IngestStateView | None = None
    after: IngestStateView | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_seconds: float = 0.0


class MessageSample(BaseModel):
    """One recently seen message, kept in memory for the status page only."""

    mailbox: str
    uid: int
    message_id: str
    subject: str = ""
    sender: str = ""
    date: str = ""
    selected_part: str | None = None
    selected_filename: str | None = None
    outcome: str
    parts_summary: list[dict[str, Any]] = Field(default_factory=list)
    seen_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StatusSnapshot(BaseModel):
    """Read-only projection served by ``GET /status``."""

    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    enabled: bool
    poll_interval_seconds: float
    mailboxes: list[IngestStateView] = Field(default_factory=list)
    last_cycle: CycleResult | None = None
    in_flight: list[str] = Field(default_factory=list)
    recent_messages: list[MessageSample] = Field(default_factory=list)


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service: str = Field(default="mail-intake")
    status: ServiceStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
