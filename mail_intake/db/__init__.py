from mail_intake.db.engine import Database
from mail_intake.db.models import Base, DedupIndexEntry, Document, DocumentFile, IngestStateRow, LedgerEntry

__all__ = [
    "Base",
    "Database",
    "DedupIndexEntry",
    "Document",
    "DocumentFile",
    "IngestStateRow",
    "LedgerEntry",
]
