"""Shared test fixtures for the mail intake test suite."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field

import pytest
from sqlalchemy import select

from mail_intake.batch import BatchProcessor
from mail_intake.config import DatabaseConfig, ImapConfig, IngestConfig, S3Config
from mail_intake.db import Database, LedgerEntry
from mail_intake.dedup import DedupIndex
from mail_intake.errors import MailTimeout, MetadataFetchError, PartTooLargeError, UploadError
from mail_intake.fetcher import PartFetcher
from mail_intake.imap_session import MessageMetadata
from mail_intake.ledger import IdempotencyLedger
from mail_intake.mime import MimePart
from mail_intake.records import LinkedRecordStore
from mail_intake.s3 import StoredObject
from mail_intake.scheduler import CycleScheduler
from mail_intake.state import IngestStateStore
from mail_intake.status import StatusTracker


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
    )


@pytest.fixture
def s3_config() -> S3Config:
    return S3Config(bucket="test-bucket", prefix="documents/email", region="us-east-1")


@pytest.fixture
def ingest_config() -> IngestConfig:
    return IngestConfig(
        enabled=True,
        scan_limit=100,
        max_attempts=5,
        wall_clock_budget_seconds=300.0,
        max_attachment_bytes=1024 * 1024,
    )


# ------------------------------------------------------------------
# Database
# ------------------------------------------------------------------


@pytest.fixture
async def database():
    db = Database(DatabaseConfig(url="sqlite+aiosqlite://"))
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def ledger(database: Database) -> IdempotencyLedger:
    return IdempotencyLedger(database.session)


@pytest.fixture
def dedup(database: Database) -> DedupIndex:
    return DedupIndex(database.session)


@pytest.fixture
def records(database: Database) -> LinkedRecordStore:
    return LinkedRecordStore(database.session)


@pytest.fixture
def state_store(database: Database) -> IngestStateStore:
    return IngestStateStore(database.session)


async def ledger_rows(ledger: IdempotencyLedger, mailbox: str) -> list[LedgerEntry]:
    """Every ledger row for *mailbox*, oldest UID first."""
    stmt = (
        select(LedgerEntry)
        .where(LedgerEntry.mailbox == mailbox)
        .order_by(LedgerEntry.message_sequence_number)
    )
    async with ledger._session_factory() as session:
        return list((await session.execute(stmt)).scalars().all())


# ------------------------------------------------------------------
# MIME tree builders
# ------------------------------------------------------------------


def text_part(path: str = "1", subtype: str = "plain") -> MimePart:
    return MimePart(
        path=path,
        content_type=f"text/{subtype}",
        params={"charset": "utf-8"},
        encoding="7bit",
        size=42,
    )


def attachment_part(
    path: str,
    *,
    content_type: str = "application/pdf",
    filename: str | None = "invoice.pdf",
    disposition: str | None = "attachment",
    encoding: str | None = "base64",
    size: int | None = 1000,
) -> MimePart:
    return MimePart(
        path=path,
        content_type=content_type,
        params={"name": filename} if filename else {},
        disposition=disposition,
        disposition_params={"filename": filename} if filename and disposition else {},
        encoding=encoding,
        size=size,
    )


def multipart(*children: MimePart, subtype: str = "mixed", path: str = "") -> MimePart:
    return MimePart(path=path, content_type=f"multipart/{subtype}", children=list(children))


# ------------------------------------------------------------------
# Fake mailbox
# ------------------------------------------------------------------


@dataclass
class FakeMessage:
    uid: int
    message_id: str
    tree: MimePart
    bodies: dict[str, bytes] = field(default_factory=dict)
    subject: str = "Your invoice"
    sender: str = "billing@example.com"


def text_message(uid: int, *, message_id: str | None = None) -> FakeMessage:
    return FakeMessage(uid, message_id or f"<msg-{uid}@example.com>", text_part())


def pdf_message(
    uid: int,
    payload: bytes,
    *,
    message_id: str | None = None,
    filename: str = "invoice.pdf",
    size: int | None = None,
) -> FakeMessage:
    encoded = base64.encodebytes(payload)
    tree = multipart(
        text_part("1"),
        attachment_part("2", filename=filename, size=len(encoded) if size is None else size),
    )
    return FakeMessage(uid, message_id or f"<msg-{uid}@example.com>", tree, {"2": encoded})


class FakeMailbox:
    """In-memory stand-in for an IMAP folder; records every operation."""

    def __init__(self, messages: list[FakeMessage] | None = None) -> None:
        self.messages = {m.uid: m for m in messages or []}
        self.ops: list[tuple] = []
        self.fetch_timeouts: dict[int, int] = {}
        self.metadata_failures: set[int] = set()
        self.open_error: Exception | None = None

    def add(self, message: FakeMessage) -> None:
        self.messages[message.uid] = message

    def time_out_fetch(self, uid: int, times: int = 1_000) -> None:
        self.fetch_timeouts[uid] = times

    def session_factory(self, mailbox: str) -> FakeMailSession:
        return FakeMailSession(self, mailbox)

    def count(self, op: str) -> int:
        return sum(1 for entry in self.ops if entry[0] == op)

    def fetched_uids(self) -> list[int]:
        return [entry[1] for entry in self.ops if entry[0] == "fetch_part"]


class FakeMailSession:
    def __init__(self, box: FakeMailbox, mailbox: str) -> None:
        self._box = box
        self.mailbox = mailbox

    async def open(self) -> None:
        self._box.ops.append(("open",))
        if self._box.open_error is not None:
            raise self._box.open_error

    async def search(self, criteria: str = "ALL") -> list[int]:
        self._box.ops.append(("search",))
        return sorted(self._box.messages)

    async def fetch_metadata(self, uid: int) -> MessageMetadata:
        self._box.ops.append(("fetch_metadata", uid))
        if uid in self._box.metadata_failures:
            raise MetadataFetchError(uid, "server returned NO with no data")
        message = self._box.messages[uid]
        return MessageMetadata(
            uid=uid,
            message_id=message.message_id,
            subject=message.subject,
            sender=message.sender,
            date="Mon, 01 Jun 2025 12:00:00 +0000",
            mime_tree=message.tree,
        )

    async def fetch_part_bytes(self, uid: int, part_path: str, max_bytes: int) -> bytes:
        self._box.ops.append(("fetch_part", uid, part_path))
        remaining = self._box.fetch_timeouts.get(uid, 0)
        if remaining > 0:
            self._box.fetch_timeouts[uid] = remaining - 1
            raise MailTimeout("fetch part", 120.0)
        data = self._box.messages[uid].bodies[part_path]
        if len(data) > max_bytes:
            raise PartTooLargeError(uid, part_path, len(data), max_bytes)
        return data

    async def reconnect(self) -> None:
        self._box.ops.append(("reconnect",))

    async def close(self) -> None:
        self._box.ops.append(("close",))


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


# ------------------------------------------------------------------
# Fake object store
# ------------------------------------------------------------------


class FakeObjectStore:
    def __init__(self) -> None:
        self.uploads: list[tuple[bytes, str, str]] = []
        self.failures: list[Exception] = []
        self.before_return = None
        self.is_configured = True

    async def upload_document(
        self,
        payload: bytes,
        content_type: str,
        suggested_name: str,
    ) -> StoredObject:
        if self.failures:
            raise self.failures.pop(0)
        self.uploads.append((payload, content_type, suggested_name))
        n = len(self.uploads)
        stored = StoredObject(id=f"doc-{n}", url=f"s3://test-bucket/documents/email/doc-{n}")
        if self.before_return is not None:
            await self.before_return(payload, stored)
        return stored


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


def upload_failure() -> UploadError:
    return UploadError("S3 put_object failed: 503 Slow Down")


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------


@pytest.fixture
def tracker() -> StatusTracker:
    return StatusTracker(sample_size=5)


@pytest.fixture
def processor(
    mailbox: FakeMailbox,
    ledger: IdempotencyLedger,
    dedup: DedupIndex,
    records: LinkedRecordStore,
    object_store: FakeObjectStore,
    ingest_config: IngestConfig,
    tracker: StatusTracker,
) -> BatchProcessor:
    return BatchProcessor(
        session_factory=mailbox.session_factory,
        ledger=ledger,
        dedup=dedup,
        records=records,
        store=object_store,
        fetcher=PartFetcher(ingest_config.max_attachment_bytes),
        category="invoice",
        status=tracker,
    )


@pytest.fixture
def scheduler(
    processor: BatchProcessor,
    state_store: IngestStateStore,
    ingest_config: IngestConfig,
    tracker: StatusTracker,
) -> CycleScheduler:
    return CycleScheduler(
        processor=processor,
        state_store=state_store,
        config=ingest_config,
        status=tracker,
    )
