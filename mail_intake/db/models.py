"""SQLAlchemy ORM models for intake state, ledger, dedup index and records."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class IngestStateRow(Base):
    """Cursor and backoff for one mailbox.  Never deleted."""

    __tablename__ = "ingest_state"

    mailbox: Mapped[str] = mapped_column(Text, primary_key=True)
    cursor: Mapped[int | None] = mapped_column(BigInteger)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class LedgerEntry(Base):
    """One attachment-level outcome.  Insert-only."""

    __tablename__ = "ingest_ledger"
    __table_args__ = (
        UniqueConstraint("mailbox", "message_id", "attachment_index", name="uq_ledger_identity"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    mailbox: Mapped[str] = mapped_column(Text, nullable=False)
    message_id: Mapped[str] = mapped_column(Text, nullable=False)
    attachment_index: Mapped[int] = mapped_column(Integer, nullable=False)
    message_sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    content_hash: Mapped[str | None] = mapped_column(Text)
    stored_document_id: Mapped[str | None] = mapped_column(Text)
    linked_record_id: Mapped[str | None] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class DedupIndexEntry(Base):
    """First stored document for a given content hash within a category."""

    __tablename__ = "dedup_index"

    owner_category: Mapped[str] = mapped_column(Text, primary_key=True)
    content_hash: Mapped[str] = mapped_column(Text, primary_key=True)
    stored_document_id: Mapped[str] = mapped_column(Text, nullable=False)
    stored_document_url: Mapped[str] = mapped_column(Text, nullable=False)
    linked_record_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Document(Base):
    """Record created for each newly ingested document, pending review."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    file_ref: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class DocumentFile(Base):
    """Stored-file metadata attached to an owner record (one per owner)."""

    __tablename__ = "document_files"
    __table_args__ = (
        UniqueConstraint("owner_category", "owner_id", name="uq_document_files_owner"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    owner_category: Mapped[str] = mapped_column(Text, nullable=False)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    stored_document_id: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str | None] = mapped_column(Text)
    original_filename: Mapped[str | None] = mapped_column(Text)
    mime_type: Mapped[str | None] = mapped_column(Text)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
