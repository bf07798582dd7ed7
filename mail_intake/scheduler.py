"""Cycle scheduler: backoff gate, per-mailbox lock, state transitions.

``run_cycle`` never raises.  The timer loop always gets a
:class:`CycleResult` back and the next tick decides again from persisted
state.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .batch import BatchProcessor
from .config import IngestConfig
from .models import BatchResult, CycleResult, CycleStatus
from .state import IngestStateStore, transition
from .status import StatusTracker

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CycleScheduler:
    def __init__(
        self,
        *,
        processor: BatchProcessor,
        state_store: IngestStateStore,
        config: IngestConfig,
        status: StatusTracker | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._processor = processor
        self._state = state_store
        self._config = config
        self._status = status
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}

    def is_running(self, mailbox: str) -> bool:
        lock = self._locks.get(mailbox)
        return lock is not None and lock.locked()

    def in_flight(self) -> list[str]:
        return [mailbox for mailbox, lock in self._locks.items() if lock.locked()]

    async def run_cycle(self, mailbox: str, *, force: bool = False) -> CycleResult:
        """Run at most one batch for *mailbox*.

        Returns ``busy`` at once if a cycle for the same mailbox is in
        flight, and ``backoff`` without contacting the mail server while
        ``next_retry_at`` lies in the future.  *force* skips the backoff
        gate (manual trigger only); it never skips the lock.
        """
        lock = self._locks.setdefault(mailbox, asyncio.Lock())
        if lock.locked():
            logger.info("cycle_busy", mailbox=mailbox)
            return CycleResult(mailbox=mailbox, status=CycleStatus.BUSY)

        async with lock:
            started = time.monotonic()
            try:
                result = await self._run_locked(mailbox, force)
            except Exception as exc:
                logger.exception("cycle_failed", mailbox=mailbox)
                result = CycleResult(
                    mailbox=mailbox,
                    status=CycleStatus.ERROR,
                    error=f"{type(exc).__name__}: {exc}",
                )
            result.duration_seconds = round(time.monotonic() - started, 3)

        if self._status is not None:
            self._status.record_cycle(result)
        return result

    async def _run_locked(self, mailbox: str, force: bool) -> CycleResult:
        before = await self._state.get(mailbox)
        now = self._now()

        if before.is_backing_off(now) and not force:
            logger.info(
                "cycle_backoff",
                mailbox=mailbox,
                attempts=before.attempts,
                next_retry_at=before.next_retry_at.isoformat(),
            )
            view = before.to_view()
            return CycleResult(mailbox=mailbox, status=CycleStatus.BACKOFF, before=view, after=view)

        cfg = self._config
        try:
            batch = await self._processor.run(
                mailbox,
                before.cursor,
                cfg.scan_limit,
                cfg.max_attempts,
                cfg.wall_clock_budget_seconds,
            )
        except Exception as exc:
            logger.exception("batch_crashed", mailbox=mailbox)
            batch = BatchResult(
                mailbox=mailbox,
                new_cursor=before.cursor,
                ok=False,
                error=f"{type(exc).__name__}: {exc}",
            )

        after = await self._state.save(transition(before, batch, cfg.backoff_minutes, self._now()))

        if after.next_retry_at is not None and after.attempts > before.attempts:
            logger.warning(
                "cycle_backoff_entered",
                mailbox=mailbox,
                attempts=after.attempts,
                next_retry_at=after.next_retry_at.isoformat(),
                error=after.last_error,
            )
        logger.info(
            "cycle_finished",
            mailbox=mailbox,
            forced=force,
            attempted=batch.attempted,
            processed=batch.processed,
            skipped=batch.skipped,
            failed=batch.failed,
            cursor_before=before.cursor,
            cursor_after=after.cursor,
        )
        return CycleResult(
            mailbox=mailbox,
            status=CycleStatus.RAN,
            batch=batch,
            before=before.to_view(),
            after=after.to_view(),
            error=batch.first_error,
        )
