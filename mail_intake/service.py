"""Service runner: wires the stores together and runs the timer and API.

Usage::

    service = IntakeService(IntakeConfig())
    asyncio.run(service.run())
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from typing import Any

import structlog
import uvicorn

from .api import create_app
from .batch import BatchProcessor
from .config import IntakeConfig
from .db import Database
from .dedup import DedupIndex
from .fetcher import PartFetcher
from .imap_session import MailSession
from .ledger import IdempotencyLedger
from .logging import setup_logging
from .models import CycleResult, ServiceStatus, StatusSnapshot
from .records import LinkedRecordStore
from .s3 import S3Store
from .scheduler import CycleScheduler
from .state import IngestState, IngestStateStore
from .status import StatusTracker

logger = structlog.get_logger()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set *shutdown_event* on SIGTERM or SIGINT.  Call from the running loop."""
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


class IntakeService:
    """Owns every long-lived component of the intake pipeline."""

    def __init__(self, config: IntakeConfig) -> None:
        self.config = config
        self.status = ServiceStatus.STARTING
        self.start_time = time.monotonic()
        self._shutdown_event = asyncio.Event()

        self.database = Database(config.database)
        self.store = S3Store(config.s3)
        self.tracker = StatusTracker(sample_size=config.ingest.sample_size)
        self.state_store = IngestStateStore(self.database.session)
        self.ledger = IdempotencyLedger(self.database.session)

        self.processor = BatchProcessor(
            session_factory=self._open_session,
            ledger=self.ledger,
            dedup=DedupIndex(self.database.session),
            records=LinkedRecordStore(self.database.session),
            store=self.store,
            fetcher=PartFetcher(config.ingest.max_attachment_bytes),
            category=config.ingest.category,
            status=self.tracker,
        )
        self.scheduler = CycleScheduler(
            processor=self.processor,
            state_store=self.state_store,
            config=config.ingest,
            status=self.tracker,
        )

    @property
    def mailbox(self) -> str:
        return self.config.imap.mailbox

    @property
    def mailboxes(self) -> list[str]:
        return [self.config.imap.mailbox]

    def _open_session(self, mailbox: str) -> MailSession:
        return MailSession(self.config.imap.model_copy(update={"mailbox": mailbox}))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.config.database.create_tables:
            await self.database.create_tables()
        if self.store.is_configured:
            await self.store.start()
        else:
            logger.warning("s3_not_configured")
        if not self.config.imap.is_configured:
            logger.warning("imap_not_configured")
        self.status = ServiceStatus.RUNNING

    async def stop(self) -> None:
        self.status = ServiceStatus.STOPPING
        await self.store.stop()
        await self.database.close()
        self.status = ServiceStatus.STOPPED

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def snapshot(self) -> StatusSnapshot:
        # Configured mailboxes first, then any others that still have a row
        persisted = {state.mailbox: state for state in await self.state_store.list_all()}
        states = [persisted.pop(mailbox, None) or IngestState(mailbox=mailbox) for mailbox in self.mailboxes]
        states.extend(persisted.values())
        return self.tracker.snapshot(
            states=[state.to_view() for state in states],
            enabled=self.config.ingest.enabled,
            poll_interval_seconds=self.config.ingest.poll_interval_seconds,
            in_flight=self.scheduler.in_flight(),
        )

    async def health_check(self) -> dict[str, Any]:
        last = self.tracker.last_cycle
        return {
            "ingest_enabled": self.config.ingest.enabled,
            "imap_configured": self.config.imap.is_configured,
            "s3_configured": self.store.is_configured,
            "in_flight": self.scheduler.in_flight(),
            "last_cycle_status": last.status.value if last else None,
            "last_cycle_at": last.started_at.isoformat() if last else None,
            "ledger_entries": await self.ledger.count(self.mailbox),
        }

    # ------------------------------------------------------------------
    # Timer loop
    # ------------------------------------------------------------------

    async def _run_timer_loop(self) -> None:
        """Tick every poll interval until shutdown, one mailbox at a time."""
        ingest = self.config.ingest
        if not ingest.enabled:
            logger.info("ingest_timer_disabled")
            await self._shutdown_event.wait()
            return

        logger.info("ingest_timer_started", poll_interval_seconds=ingest.poll_interval_seconds)
        while not self._shutdown_event.is_set():
            for mailbox in self.mailboxes:
                await self.scheduler.run_cycle(mailbox)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=ingest.poll_interval_seconds,
                )
        logger.info("ingest_timer_stopped")

    async def _run_api_server(self) -> None:
        """Serve the control API until the shutdown event fires."""
        control = self.config.control
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self),
                host=control.host,
                port=control.port,
                log_level="warning",
            )
        )
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start everything and run until SIGTERM/SIGINT."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info("intake_starting", mailbox=self.mailbox)

        await self.start()
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_timer_loop())
                tg.create_task(self._run_api_server())
        except* Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("intake_task_group_error")
        finally:
            await self.stop()
            logger.info("intake_stopped")

    async def run_once(self, *, force: bool = False) -> CycleResult:
        """Run a single cycle for the configured mailbox and return its result."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        await self.start()
        try:
            return await self.scheduler.run_cycle(self.mailbox, force=force)
        finally:
            await self.stop()
