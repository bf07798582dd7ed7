"""Bounded batch over one mailbox: scan, select, fetch, dedup, store, record.

One batch owns one :class:`MailSession` and one retry budget.  Message
level problems are counted and the batch moves on; a metadata failure or a
byte-fetch timeout that survives the single reconnect stops the batch,
since both point at an unhealthy connection.
"""

from __future__ import annotations

import mimetypes
import time
from collections.abc import Callable, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .db.models import DedupIndexEntry
from .dedup import DedupIndex, content_hash
from .envelope import fallback_message_id
from .errors import (
    IntakeError,
    MailTimeout,
    MetadataFetchError,
    NotConfiguredError,
    PartDecodeError,
    PartTooLargeError,
)
from .fetcher import PartFetcher
from .imap_session import MailSession, MessageMetadata
from .ledger import IdempotencyLedger
from .mime import summarize_parts
from .models import BatchResult, MessageSample, Outcome, SkipReason
from .records import LinkedRecordStore
from .retry import TimeoutRetryPolicy
from .s3 import S3Store, StoredObject
from .selector import SelectedPart, select_attachment
from .status import StatusTracker

logger = structlog.get_logger()


def select_window(uids: Sequence[int], cursor: int | None, scan_limit: int) -> list[int]:
    """UIDs to consider this batch, newest first.

    Without a cursor only the newest *scan_limit* messages are looked at;
    with one, only UIDs strictly above it.
    """
    if cursor is not None:
        uids = [uid for uid in uids if uid > cursor]
    return sorted(uids, reverse=True)[:scan_limit]


class BatchProcessor:
    """Runs one bounded batch against a mailbox."""

    def __init__(
        self,
        *,
        session_factory: Callable[[str], MailSession],
        ledger: IdempotencyLedger,
        dedup: DedupIndex,
        records: LinkedRecordStore,
        store: S3Store,
        fetcher: PartFetcher,
        category: str,
        status: StatusTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._dedup = dedup
        self._records = records
        self._store = store
        self._fetcher = fetcher
        self._category = category
        self._status = status
        self._clock = clock

    async def run(
        self,
        mailbox: str,
        cursor: int | None,
        scan_limit: int,
        max_attempts: int,
        wall_clock_budget: float,
    ) -> BatchResult:
        result = BatchResult(mailbox=mailbox, new_cursor=cursor)
        log = logger.bind(mailbox=mailbox)

        if not self._store.is_configured:
            result.ok = False
            result.error = str(NotConfiguredError(["S3_BUCKET"]))
            log.error("batch_not_configured", error=result.error)
            return result

        started = self._clock()
        session = self._session_factory(mailbox)
        try:
            try:
                await session.open()
                uids = await session.search()
            except IntakeError as exc:
                result.ok = False
                result.error = str(exc)
                result.timed_out = isinstance(exc, MailTimeout)
                log.error("batch_session_failed", error=result.error)
                return result

            window = select_window(uids, cursor, scan_limit)
            log.info("batch_started", cursor=cursor, total=len(uids), window=len(window))

            retry = TimeoutRetryPolicy(max_retries=1)
            for uid in window:
                if result.attempted >= max_attempts:
                    break
                if self._clock() - started >= wall_clock_budget:
                    log.info("batch_budget_exhausted", attempted=result.attempted)
                    break

                result.attempted += 1
                if result.new_cursor is None or uid > result.new_cursor:
                    result.new_cursor = uid

                if await self._process_message(session, mailbox, uid, retry, result):
                    result.aborted = True
                    break
        finally:
            await session.close()

        log.info(
            "batch_finished",
            attempted=result.attempted,
            processed=result.processed,
            skipped=result.skipped,
            failed=result.failed,
            new_cursor=result.new_cursor,
            aborted=result.aborted,
            elapsed_seconds=round(self._clock() - started, 3),
        )
        return result

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    async def _process_message(
        self,
        session: MailSession,
        mailbox: str,
        uid: int,
        retry: TimeoutRetryPolicy,
        result: BatchResult,
    ) -> bool:
        """Handle one message.  Returns True when the batch must stop."""
        log = logger.bind(mailbox=mailbox, uid=uid)

        # Rescans after a backoff meet handled UIDs again; skip them unfetched
        if await self._ledger.exists(mailbox, fallback_message_id(uid), uid):
            result.add_skip(SkipReason.ALREADY_PROCESSED)
            log.info("batch_message_skipped", reason=SkipReason.ALREADY_PROCESSED.value)
            return False

        try:
            meta = await session.fetch_metadata(uid)
        except MetadataFetchError as exc:
            # Terminal: the message is unusable, not the connection
            await self._ledger.record(
                mailbox=mailbox,
                message_id=fallback_message_id(uid),
                attachment_index=0,
                uid=uid,
                outcome=Outcome.FAILED,
                error=str(exc),
            )
            result.add_failure(f"uid {uid}: {exc}")
            log.error("batch_metadata_failed", error=str(exc))
            return True
        except IntakeError as exc:
            result.timed_out = isinstance(exc, MailTimeout)
            result.add_failure(f"uid {uid}: {exc}")
            log.error("batch_metadata_failed", error=str(exc))
            return True

        log = log.bind(message_id=meta.message_id)

        if await self._ledger.exists(mailbox, meta.message_id):
            result.add_skip(SkipReason.ALREADY_PROCESSED)
            log.info("batch_message_skipped", reason=SkipReason.ALREADY_PROCESSED.value)
            self._sample(mailbox, meta, None, SkipReason.ALREADY_PROCESSED.value)
            return False

        part = select_attachment(meta.mime_tree)
        if part is None:
            result.add_skip(SkipReason.NO_ELIGIBLE_ATTACHMENT)
            log.info(
                "batch_message_skipped",
                reason=SkipReason.NO_ELIGIBLE_ATTACHMENT.value,
                parts=summarize_parts(meta.mime_tree),
            )
            self._sample(mailbox, meta, None, SkipReason.NO_ELIGIBLE_ATTACHMENT.value)
            return False

        log = log.bind(part=part.path, filename=part.filename)

        try:
            payload = await retry.run(session, lambda: self._fetcher.fetch(session, uid, part))
        except MailTimeout as exc:
            result.timed_out = True
            result.add_failure(f"uid {uid}: {exc}")
            log.error("batch_fetch_timed_out", retries_used=retry.retries_used)
            self._sample(mailbox, meta, part, "timeout")
            return True
        except (PartTooLargeError, PartDecodeError) as exc:
            await self._ledger.record(
                mailbox=mailbox,
                message_id=meta.message_id,
                attachment_index=part.attachment_index,
                uid=uid,
                outcome=Outcome.FAILED,
                error=str(exc),
            )
            result.add_failure(f"uid {uid}: {exc}")
            log.warning("batch_part_rejected", error=str(exc))
            self._sample(mailbox, meta, part, Outcome.FAILED.value)
            return False
        except IntakeError as exc:
            result.add_failure(f"uid {uid}: {exc}")
            log.error("batch_fetch_failed", error=str(exc))
            self._sample(mailbox, meta, part, Outcome.FAILED.value)
            return True

        digest = content_hash(payload)
        existing = await self._dedup.lookup(self._category, digest)
        if existing is not None:
            await self._record_duplicate(mailbox, meta, part, digest, existing, result)
            return False

        await self._store_new(mailbox, meta, part, payload, digest, result)
        return False

    async def _store_new(
        self,
        mailbox: str,
        meta: MessageMetadata,
        part: SelectedPart,
        payload: bytes,
        digest: str,
        result: BatchResult,
    ) -> None:
        log = logger.bind(mailbox=mailbox, uid=meta.uid, message_id=meta.message_id)
        stored: StoredObject | None = None
        claimed = False
        try:
            stored = await self._store.upload_document(
                payload, part.mime_type, _suggested_name(meta.uid, part)
            )
            if not await self._dedup.claim(self._category, digest, stored):
                # Lost the race: an identical document was stored concurrently
                existing = await self._dedup.lookup(self._category, digest)
                if existing is not None:
                    log.warning("orphaned_upload", stored_document_id=stored.id, url=stored.url)
                    await self._record_duplicate(mailbox, meta, part, digest, existing, result)
                    return
                raise IntakeError("dedup claim conflicted but no entry found", content_hash=digest)
            claimed = True

            record_id = await self._records.create_record({
                "category": self._category,
                "file_ref": stored.url,
                "notes": f"From: {meta.sender}; Subject: {meta.subject}",
            })
            await self._records.upsert_file_metadata(
                {
                    "owner_category": self._category,
                    "owner_id": record_id,
                    "stored_document_id": stored.id,
                    "url": stored.url,
                    "content_hash": digest,
                    "original_filename": part.filename or None,
                    "mime_type": part.mime_type,
                    "size_bytes": len(payload),
                },
                conflict_key=("owner_category", "owner_id"),
            )
            await self._dedup.link_record(self._category, digest, record_id)
        except (IntakeError, SQLAlchemyError) as exc:
            existing = await self._dedup.lookup(self._category, digest)
            if existing is not None and (stored is None or existing.stored_document_id != stored.id):
                await self._record_duplicate(mailbox, meta, part, digest, existing, result)
                return
            if claimed:
                await self._dedup.release(self._category, digest, stored.id)
            result.add_failure(f"uid {meta.uid}: {exc}")
            log.error("batch_store_failed", error=str(exc))
            self._sample(mailbox, meta, part, Outcome.FAILED.value)
            return

        await self._ledger.record(
            mailbox=mailbox,
            message_id=meta.message_id,
            attachment_index=part.attachment_index,
            uid=meta.uid,
            outcome=Outcome.PROCESSED,
            content_hash=digest,
            stored_document_id=stored.id,
            linked_record_id=record_id,
        )
        result.processed += 1
        result.document_ids.append(stored.id)
        log.info(
            "batch_message_processed",
            stored_document_id=stored.id,
            record_id=record_id,
            size=len(payload),
        )
        self._sample(mailbox, meta, part, Outcome.PROCESSED.value)

    async def _record_duplicate(
        self,
        mailbox: str,
        meta: MessageMetadata,
        part: SelectedPart,
        digest: str,
        existing: DedupIndexEntry,
        result: BatchResult,
    ) -> None:
        await self._ledger.record(
            mailbox=mailbox,
            message_id=meta.message_id,
            attachment_index=part.attachment_index,
            uid=meta.uid,
            outcome=Outcome.DUPLICATE,
            content_hash=digest,
            stored_document_id=existing.stored_document_id,
            linked_record_id=existing.linked_record_id,
        )
        result.add_skip(SkipReason.DUPLICATE_CONTENT)
        logger.info(
            "batch_message_skipped",
            mailbox=mailbox,
            uid=meta.uid,
            reason=SkipReason.DUPLICATE_CONTENT.value,
            stored_document_id=existing.stored_document_id,
        )
        self._sample(mailbox, meta, part, Outcome.DUPLICATE.value)

    def _sample(
        self,
        mailbox: str,
        meta: MessageMetadata,
        part: SelectedPart | None,
        outcome: str,
    ) -> None:
        if self._status is None:
            return
        self._status.record_message(
            MessageSample(
                mailbox=mailbox,
                uid=meta.uid,
                message_id=meta.message_id,
                subject=meta.subject,
                sender=meta.sender,
                date=meta.date,
                selected_part=part.path if part else None,
                selected_filename=part.filename if part else None,
                outcome=outcome,
                parts_summary=summarize_parts(meta.mime_tree),
            )
        )


def _suggested_name(uid: int, part: SelectedPart) -> str:
    if part.filename:
        return part.filename
    extension = mimetypes.guess_extension(part.mime_type) or ""
    return f"uid-{uid}{extension}"
