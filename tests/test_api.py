"""Tests for mail_intake.api."""

from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from mail_intake.api import create_app
from mail_intake.config import ControlConfig, DatabaseConfig, ImapConfig, IngestConfig, IntakeConfig, S3Config
from mail_intake.errors import MailSessionError
from mail_intake.models import BatchResult, ServiceStatus
from mail_intake.service import IntakeService
from mail_intake.state import IngestState
from tests.conftest import FakeMailbox, FakeObjectStore, pdf_message, text_message

SECRET = "let-me-in"


def _config(**control) -> IntakeConfig:
    return IntakeConfig(
        imap=ImapConfig(host="imap.test.com", username="u", password="p", mailbox="INBOX"),
        s3=S3Config(bucket=""),
        database=DatabaseConfig(url="sqlite+aiosqlite://"),
        ingest=IngestConfig(enabled=False),
        control=ControlConfig(**{"trigger_enabled": True, "trigger_secret": SECRET, **control}),
    )


async def _service(config: IntakeConfig, mailbox: FakeMailbox, object_store: FakeObjectStore) -> IntakeService:
    service = IntakeService(config)
    service.processor._session_factory = mailbox.session_factory
    service.processor._store = object_store
    await service.start()
    return service


@pytest.fixture
async def service(mailbox: FakeMailbox, object_store: FakeObjectStore):
    svc = await _service(_config(), mailbox, object_store)
    yield svc
    await svc.stop()


@pytest.fixture
async def client(service: IntakeService):
    async with AsyncClient(transport=ASGITransport(app=create_app(service)), base_url="http://test") as ac:
        yield ac


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_running(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "mail-intake"
        assert data["status"] == "running"
        assert data["details"]["imap_configured"] is True
        assert data["details"]["last_cycle_status"] is None
        assert data["details"]["ledger_entries"] == 0

    @pytest.mark.asyncio
    async def test_health_degraded(self, client: AsyncClient, service: IntakeService):
        service.status = ServiceStatus.DEGRADED
        resp = await client.get("/health")
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_ready(self, client: AsyncClient, service: IntakeService):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["ready"] is True

        service.status = ServiceStatus.STARTING
        resp = await client.get("/ready")
        assert resp.status_code == 503


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_before_any_cycle(self, client: AsyncClient):
        resp = await client.get("/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["enabled"] is False
        assert data["mailboxes"] == [
            {
                "mailbox": "INBOX",
                "cursor": None,
                "attempts": 0,
                "next_retry_at": None,
                "last_error": None,
                "updated_at": None,
            }
        ]
        assert data["last_cycle"] is None
        assert data["recent_messages"] == []

    @pytest.mark.asyncio
    async def test_status_after_trigger(self, client: AsyncClient, mailbox: FakeMailbox):
        mailbox.add(pdf_message(2, b"%PDF status"))
        mailbox.add(text_message(1))

        await client.post("/trigger", headers={"X-Intake-Trigger-Secret": SECRET})
        data = (await client.get("/status")).json()

        assert data["mailboxes"][0]["cursor"] == 2
        assert data["last_cycle"]["status"] == "ran"
        assert [m["uid"] for m in data["recent_messages"]] == [1, 2]
        assert data["recent_messages"][1]["selected_filename"] == "invoice.pdf"

    @pytest.mark.asyncio
    async def test_status_lists_mailboxes_with_stored_state(self, client: AsyncClient, service: IntakeService):
        await service.state_store.save(IngestState(mailbox="Archive", cursor=9))

        data = (await client.get("/status")).json()

        assert [m["mailbox"] for m in data["mailboxes"]] == ["INBOX", "Archive"]
        assert data["mailboxes"][1]["cursor"] == 9
        assert data["mailboxes"][1]["updated_at"] is not None

    @pytest.mark.asyncio
    async def test_status_does_not_touch_mailbox(self, client: AsyncClient, mailbox: FakeMailbox):
        await client.get("/status")
        await client.get("/health")
        assert mailbox.ops == []


class TestTrigger:
    @pytest.mark.asyncio
    async def test_runs_cycle(self, client: AsyncClient, mailbox: FakeMailbox, object_store: FakeObjectStore):
        mailbox.add(pdf_message(1, b"%PDF trigger"))

        resp = await client.post("/trigger", headers={"X-Intake-Trigger-Secret": SECRET})

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ran"
        assert data["batch"]["processed"] == 1
        assert len(object_store.uploads) == 1
        health = (await client.get("/health")).json()
        assert health["details"]["ledger_entries"] == 1

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client: AsyncClient, mailbox: FakeMailbox):
        resp = await client.post("/trigger", headers={"X-Intake-Trigger-Secret": "nope"})
        assert resp.status_code == 401
        assert mailbox.ops == []

    @pytest.mark.asyncio
    async def test_missing_secret(self, client: AsyncClient):
        resp = await client.post("/trigger")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_mailbox(self, client: AsyncClient):
        resp = await client.post(
            "/trigger",
            params={"mailbox": "Spam"},
            headers={"X-Intake-Trigger-Secret": SECRET},
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_disabled_trigger_is_not_found(self, mailbox: FakeMailbox, object_store: FakeObjectStore):
        svc = await _service(_config(trigger_enabled=False), mailbox, object_store)
        try:
            async with AsyncClient(transport=ASGITransport(app=create_app(svc)), base_url="http://test") as ac:
                resp = await ac.post("/trigger", headers={"X-Intake-Trigger-Secret": SECRET})
            assert resp.status_code == 404
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_enabled_without_secret_is_not_found(self, mailbox: FakeMailbox, object_store: FakeObjectStore):
        svc = await _service(_config(trigger_secret=None), mailbox, object_store)
        try:
            async with AsyncClient(transport=ASGITransport(app=create_app(svc)), base_url="http://test") as ac:
                resp = await ac.post("/trigger", headers={"X-Intake-Trigger-Secret": ""})
            assert resp.status_code == 404
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_busy_returns_conflict(self, client: AsyncClient, service: IntakeService):
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowProcessor:
            async def run(self, mailbox, cursor, *args) -> BatchResult:
                started.set()
                await release.wait()
                return BatchResult(mailbox=mailbox, new_cursor=cursor)

        service.scheduler._processor = SlowProcessor()
        running = asyncio.create_task(service.scheduler.run_cycle("INBOX"))
        await started.wait()

        resp = await client.post("/trigger", headers={"X-Intake-Trigger-Secret": SECRET})

        assert resp.status_code == 409
        release.set()
        await running

    @pytest.mark.asyncio
    async def test_trigger_bypasses_backoff(self, client: AsyncClient, service: IntakeService, mailbox: FakeMailbox):
        mailbox.add(text_message(1))
        mailbox.open_error = MailSessionError("connection refused")
        first = await service.scheduler.run_cycle("INBOX")
        assert first.after.attempts == 1

        mailbox.open_error = None
        resp = await client.post("/trigger", headers={"X-Intake-Trigger-Secret": SECRET})

        assert resp.status_code == 200
        assert resp.json()["after"]["attempts"] == 0
