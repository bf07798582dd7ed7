"""Per-mailbox cursor and backoff state.

The transition functions are pure: they take the current state plus a
batch outcome and return the next state.  :class:`IngestStateStore` only
loads and persists rows.

    Idle --(batch failed)--> Backoff --(retry time passes, batch ok)--> Idle

Invariant: ``attempts == 0`` iff ``next_retry_at is None``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import IngestStateRow
from .models import BatchResult, IngestStateView


@dataclass(frozen=True)
class IngestState:
    mailbox: str
    cursor: int | None = None
    attempts: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime | None = None

    def is_backing_off(self, now: datetime) -> bool:
        return self.next_retry_at is not None and self.next_retry_at > now

    def to_view(self) -> IngestStateView:
        return IngestStateView(
            mailbox=self.mailbox,
            cursor=self.cursor,
            attempts=self.attempts,
            next_retry_at=self.next_retry_at,
            last_error=self.last_error,
            updated_at=self.updated_at,
        )


# ------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------


def backoff_delay(attempts_before: int, table_minutes: Sequence[int]) -> timedelta:
    """Delay after a failure, capped at the last table entry."""
    index = min(max(attempts_before, 0), len(table_minutes) - 1)
    return timedelta(minutes=table_minutes[index])


def apply_cursor(state: IngestState, new_cursor: int | None, now: datetime) -> IngestState:
    """Advance the cursor.  It never moves backwards."""
    cursor = state.cursor
    if new_cursor is not None and (cursor is None or new_cursor > cursor):
        cursor = new_cursor
    return replace(state, cursor=cursor, updated_at=now)


def apply_success(state: IngestState, new_cursor: int | None, now: datetime) -> IngestState:
    advanced = apply_cursor(state, new_cursor, now)
    return replace(advanced, attempts=0, next_retry_at=None, last_error=None)


def apply_failure(
    state: IngestState,
    error: str,
    table_minutes: Sequence[int],
    now: datetime,
) -> IngestState:
    """Schedule a retry.  The cursor is left where it was."""
    return replace(
        state,
        updated_at=now,
        attempts=state.attempts + 1,
        next_retry_at=now + backoff_delay(state.attempts, table_minutes),
        last_error=error,
    )


def transition(
    state: IngestState,
    batch: BatchResult,
    table_minutes: Sequence[int],
    now: datetime,
) -> IngestState:
    """Next state after *batch* ran against *state*."""
    if batch.is_failure:
        error = batch.first_error or "batch failed"
        return apply_failure(state, error, table_minutes, now)
    # A batch that never attempted anything leaves the cursor alone
    new_cursor = batch.new_cursor if batch.attempted else None
    if batch.succeeded:
        return apply_success(state, new_cursor, now)
    return apply_cursor(state, new_cursor, now)


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


class IngestStateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, mailbox: str) -> IngestState:
        """Load state for *mailbox*; a mailbox never seen before is Idle."""
        async with self._session_factory() as session:
            row = await session.get(IngestStateRow, mailbox)
        if row is None:
            return IngestState(mailbox=mailbox)
        return _from_row(row)

    async def save(self, state: IngestState) -> IngestState:
        updated_at = state.updated_at or datetime.now(UTC)
        async with self._session_factory() as session:
            await session.merge(
                IngestStateRow(
                    mailbox=state.mailbox,
                    cursor=state.cursor,
                    attempts=state.attempts,
                    next_retry_at=state.next_retry_at,
                    last_error=state.last_error,
                    updated_at=updated_at,
                )
            )
            await session.commit()
        return replace(state, updated_at=updated_at)

    async def list_all(self) -> list[IngestState]:
        async with self._session_factory() as session:
            result = await session.execute(select(IngestStateRow).order_by(IngestStateRow.mailbox))
            return [_from_row(row) for row in result.scalars().all()]


def _from_row(row: IngestStateRow) -> IngestState:
    return IngestState(
        mailbox=row.mailbox,
        cursor=row.cursor,
        attempts=row.attempts,
        next_retry_at=_as_utc(row.next_retry_at),
        last_error=row.last_error,
        updated_at=_as_utc(row.updated_at),
    )


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
