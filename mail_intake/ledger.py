"""Idempotency ledger: one durable row per handled attachment.

Rows are insert-only.  The ``(mailbox, message_id, attachment_index)``
unique constraint is the idempotency guarantee, so a conflicting insert
means "already recorded" and is not an error.
"""

from __future__ import annotations

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import LedgerEntry
from .models import Outcome

logger = structlog.get_logger()


class IdempotencyLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists(self, mailbox: str, message_id: str, uid: int | None = None) -> bool:
        """True if any attachment of this message already has a ledger row.

        Matches on the Message-ID, or on the UID for messages whose id was
        synthesised from it.
        """
        condition = LedgerEntry.message_id == message_id
        if uid is not None:
            condition = or_(condition, LedgerEntry.message_sequence_number == uid)
        stmt = select(LedgerEntry.id).where(LedgerEntry.mailbox == mailbox, condition).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def record(
        self,
        *,
        mailbox: str,
        message_id: str,
        attachment_index: int,
        uid: int,
        outcome: Outcome,
        content_hash: str | None = None,
        stored_document_id: str | None = None,
        linked_record_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Insert a ledger row.  Returns False if the identity already exists."""
        entry = LedgerEntry(
            mailbox=mailbox,
            message_id=message_id,
            attachment_index=attachment_index,
            message_sequence_number=uid,
            outcome=outcome.value,
            content_hash=content_hash,
            stored_document_id=stored_document_id,
            linked_record_id=linked_record_id,
            error=error,
        )
        async with self._session_factory() as session:
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "ledger_entry_exists",
                    mailbox=mailbox,
                    message_id=message_id,
                    attachment_index=attachment_index,
                )
                return False
        logger.debug(
            "ledger_entry_recorded",
            mailbox=mailbox,
            message_id=message_id,
            uid=uid,
            outcome=outcome.value,
        )
        return True

    async def count(self, mailbox: str | None = None) -> int:
        stmt = select(func.count()).select_from(LedgerEntry)
        if mailbox is not None:
            stmt = stmt.where(LedgerEntry.mailbox == mailbox)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()
