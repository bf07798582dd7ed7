"""Mail intake: read-only IMAP document ingestion with dedup and an idempotency ledger.

Public API re-exported here for convenience::

    from mail_intake import IntakeConfig, IntakeService
"""

from .batch import BatchProcessor, select_window
from .config import ControlConfig, DatabaseConfig, ImapConfig, IngestConfig, IntakeConfig, S3Config
from .dedup import DedupIndex, content_hash
from .errors import (
    IntakeError,
    MailSessionError,
    MailTimeout,
    MetadataFetchError,
    NotConfiguredError,
    PartDecodeError,
    PartTooLargeError,
    UploadError,
)
from .fetcher import PartFetcher
from .imap_session import MailSession, MessageMetadata
from .ledger import IdempotencyLedger
from .logging import setup_logging
from .models import BatchResult, CycleResult, CycleStatus, Outcome, SkipReason, StatusSnapshot
from .records import LinkedRecordStore
from .retry import TimeoutRetryPolicy
from .s3 import S3Store, StoredObject
from .scheduler import CycleScheduler
from .selector import SelectedPart, select_attachment
from .service import IntakeService
from .state import IngestState, IngestStateStore
from .status import StatusTracker

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "ControlConfig",
    "CycleResult",
    "CycleScheduler",
    "CycleStatus",
    "DatabaseConfig",
    "DedupIndex",
    "IdempotencyLedger",
    "ImapConfig",
    "IngestConfig",
    "IngestState",
    "IngestStateStore",
    "IntakeConfig",
    "IntakeError",
    "IntakeService",
    "LinkedRecordStore",
    "MailSession",
    "MailSessionError",
    "MailTimeout",
    "MessageMetadata",
    "MetadataFetchError",
    "NotConfiguredError",
    "Outcome",
    "PartDecodeError",
    "PartFetcher",
    "PartTooLargeError",
    "S3Config",
    "S3Store",
    "SelectedPart",
    "SkipReason",
    "StatusSnapshot",
    "StatusTracker",
    "StoredObject",
    "TimeoutRetryPolicy",
    "UploadError",
    "content_hash",
    "select_attachment",
    "select_window",
    "setup_logging",
]
