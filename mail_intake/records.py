"""Linked records created for each newly stored document."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import Document, DocumentFile

logger = structlog.get_logger()

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class LinkedRecordStore:
    """Creates ``documents`` rows and upserts their ``document_files`` metadata."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_record(self, fields: Mapping[str, Any]) -> str:
        """Insert a document record and return its id."""
        record = Document(**{"source": "email", "needs_review": True, **fields})
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        logger.info("linked_record_created", record_id=record.id, category=record.category)
        return record.id

    async def upsert_file_metadata(
        self,
        fields: Mapping[str, Any],
        conflict_key: Sequence[str] = ("owner_category", "owner_id"),
    ) -> None:
        """Insert file metadata, or overwrite the row matching *conflict_key*."""
        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            try:
                make_insert = _UPSERT_INSERTS[dialect]
            except KeyError:
                raise ValueError(f"upsert not supported for dialect {dialect!r}") from None

            values = dict(fields)
            stmt = make_insert(DocumentFile).values(**values)
            updates = {k: v for k, v in values.items() if k not in conflict_key}
            updates["updated_at"] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_key), set_=updates)
            await session.execute(stmt)
            await session.commit()
