"""Content-addressed dedup index: (category, sha256) → stored document.

The hash covers the decoded attachment bytes only, never the filename or
any message metadata, so identical files arriving by different routes
collide.
"""

from __future__ import annotations

import hashlib

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import DedupIndexEntry
from .s3 import StoredObject

logger = structlog.get_logger()


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class DedupIndex:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup(self, category: str, digest: str) -> DedupIndexEntry | None:
        async with self._session_factory() as session:
            return await session.get(DedupIndexEntry, (category, digest))

    async def claim(self, category: str, digest: str, stored: StoredObject) -> bool:
        """Insert the entry for *digest*.

        Returns False when another writer already claimed this hash, in
        which case *stored* is a redundant copy and the existing entry wins.
        """
        entry = DedupIndexEntry(
            owner_category=category,
            content_hash=digest,
            stored_document_id=stored.id,
            stored_document_url=stored.url,
        )
        async with self._session_factory() as session:
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("dedup_claim_lost", category=category, content_hash=digest)
                return False
        return True

    async def link_record(self, category: str, digest: str, record_id: str) -> None:
        """Attach the linked record id to an entry, once."""
        stmt = (
            update(DedupIndexEntry)
            .where(
                DedupIndexEntry.owner_category == category,
                DedupIndexEntry.content_hash == digest,
                DedupIndexEntry.linked_record_id.is_(None),
            )
            .values(linked_record_id=record_id)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def release(self, category: str, digest: str, stored_document_id: str) -> bool:
        """Drop a claim whose record was never written.

        Only the entry still pointing at *stored_document_id* is removed.
        """
        stmt = delete(DedupIndexEntry).where(
            DedupIndexEntry.owner_category == category,
            DedupIndexEntry.content_hash == digest,
            DedupIndexEntry.stored_document_id == stored_document_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount:
            logger.info("dedup_claim_released", category=category, content_hash=digest)
        return bool(result.rowcount)
