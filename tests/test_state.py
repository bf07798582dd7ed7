"""Tests for mail_intake.state."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from mail_intake.models import BatchResult
from mail_intake.state import (
    IngestState,
    IngestStateStore,
    apply_cursor,
    backoff_delay,
    transition,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
TABLE = [5, 15, 30, 60]


class TestBackoffDelay:
    def test_table_lookup_and_cap(self):
        assert [backoff_delay(n, TABLE) for n in range(6)] == [
            timedelta(minutes=m) for m in (5, 15, 30, 60, 60, 60)
        ]


class TestApplyCursor:
    def test_monotonic(self):
        state = IngestState(mailbox="INBOX", cursor=7)
        assert apply_cursor(state, 3, NOW).cursor == 7
        assert apply_cursor(state, 9, NOW).cursor == 9
        assert apply_cursor(state, None, NOW).cursor == 7
        assert apply_cursor(IngestState(mailbox="INBOX"), 1, NOW).cursor == 1


class TestTransition:
    def test_success_resets_backoff(self):
        state = IngestState(mailbox="INBOX", cursor=2, attempts=3, next_retry_at=NOW, last_error="boom")
        batch = BatchResult(mailbox="INBOX", attempted=1, processed=1, new_cursor=4)

        after = transition(state, batch, TABLE, NOW)

        assert after.cursor == 4
        assert after.attempts == 0
        assert after.next_retry_at is None
        assert after.last_error is None
        assert after.updated_at == NOW

    def test_failure_schedules_retry(self):
        state = IngestState(mailbox="INBOX", cursor=2, attempts=1, next_retry_at=NOW, last_error="old")
        batch = BatchResult(mailbox="INBOX", attempted=2, processed=1, new_cursor=5)
        batch.add_failure("IMAP fetch part timed out")

        after = transition(state, batch, TABLE, NOW)

        assert after.attempts == 2
        assert after.next_retry_at == NOW + timedelta(minutes=15)
        assert after.last_error == "IMAP fetch part timed out"
        assert after.cursor == 2
        assert after.updated_at == NOW

    def test_failure_without_attempts_keeps_cursor(self):
        state = IngestState(mailbox="INBOX", cursor=2)
        batch = BatchResult(mailbox="INBOX", new_cursor=99, ok=False, error="connection refused")

        after = transition(state, batch, TABLE, NOW)

        assert after.cursor == 2
        assert after.attempts == 1
        assert after.last_error == "connection refused"

    def test_empty_run_only_touches_cursor(self):
        state = IngestState(mailbox="INBOX", cursor=2, attempts=1, next_retry_at=NOW, last_error="x")
        batch = BatchResult(mailbox="INBOX", new_cursor=2)

        after = transition(state, batch, TABLE, NOW)

        assert after.attempts == 1
        assert after.next_retry_at == NOW
        assert after.last_error == "x"

    def test_invariant_attempts_zero_iff_no_retry(self):
        state = IngestState(mailbox="INBOX")
        failed = BatchResult(mailbox="INBOX", ok=False, error="down")
        ok = BatchResult(mailbox="INBOX", attempted=1, skipped=1, new_cursor=1)

        for batch in (failed, failed, ok, failed, ok):
            state = transition(state, batch, TABLE, NOW)
            assert (state.attempts == 0) == (state.next_retry_at is None)


class TestIngestState:
    def test_is_backing_off(self):
        state = IngestState(mailbox="INBOX", attempts=1, next_retry_at=NOW + timedelta(minutes=1))
        assert state.is_backing_off(NOW)
        assert not state.is_backing_off(NOW + timedelta(minutes=2))
        assert not IngestState(mailbox="INBOX").is_backing_off(NOW)

    def test_to_view(self):
        view = IngestState(mailbox="INBOX", cursor=3).to_view()
        assert view.mailbox == "INBOX"
        assert view.cursor == 3
        assert view.attempts == 0


class TestIngestStateStore:
    @pytest.mark.asyncio
    async def test_unknown_mailbox_is_idle(self, state_store: IngestStateStore):
        state = await state_store.get("Archive")
        assert state == IngestState(mailbox="Archive")

    @pytest.mark.asyncio
    async def test_round_trip_returns_utc(self, state_store: IngestStateStore):
        saved = await state_store.save(
            IngestState(
                mailbox="INBOX",
                cursor=12,
                attempts=2,
                next_retry_at=NOW + timedelta(minutes=15),
                last_error="IMAP fetch part timed out",
                updated_at=NOW,
            )
        )

        loaded = await state_store.get("INBOX")

        assert loaded == saved
        assert loaded.next_retry_at.tzinfo is not None
        assert loaded.next_retry_at == NOW + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_save_overwrites_and_stamps(self, state_store: IngestStateStore):
        await state_store.save(IngestState(mailbox="INBOX", cursor=1))
        second = await state_store.save(IngestState(mailbox="INBOX", cursor=2))

        assert second.updated_at is not None
        assert (await state_store.get("INBOX")).cursor == 2

    @pytest.mark.asyncio
    async def test_list_all_sorted(self, state_store: IngestStateStore):
        await state_store.save(IngestState(mailbox="Invoices"))
        await state_store.save(IngestState(mailbox="INBOX", cursor=3))

        states = await state_store.list_all()

        assert [s.mailbox for s in states] == ["INBOX", "Invoices"]
