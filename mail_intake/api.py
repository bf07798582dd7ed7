"""FastAPI control surface: health checks, status snapshot, manual trigger."""

from __future__ import annotations

import secrets
import time
from typing import TYPE_CHECKING

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from .models import CycleStatus, HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import IntakeService


def create_app(service: IntakeService) -> FastAPI:
    """Build the control app around a running :class:`IntakeService`.

    ``POST /trigger`` exists only when ``CONTROL_TRIGGER_ENABLED`` is set
    and a secret is configured; otherwise it answers 404 like any unknown
    route.
    """
    app = FastAPI(title="mail-intake control", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=await service.health_check(),
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ServiceStatus.RUNNING and await service.database.ping()
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.get("/status")
    async def status() -> JSONResponse:
        snapshot = await service.snapshot()
        return JSONResponse(content=snapshot.model_dump(mode="json"))

    @app.post("/trigger")
    async def trigger(
        mailbox: str | None = None,
        x_intake_trigger_secret: str | None = Header(default=None),
    ) -> JSONResponse:
        control = service.config.control
        expected = control.trigger_secret.get_secret_value() if control.trigger_secret else ""
        if not control.trigger_enabled or not expected:
            raise HTTPException(status_code=404, detail="Not Found")

        provided = x_intake_trigger_secret or ""
        if not secrets.compare_digest(provided.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="Invalid trigger secret")

        target = mailbox or service.mailbox
        if target not in service.mailboxes:
            raise HTTPException(status_code=404, detail=f"Unknown mailbox {target!r}")

        result = await service.scheduler.run_cycle(target, force=True)
        if result.status == CycleStatus.BUSY:
            raise HTTPException(status_code=409, detail="A cycle is already running for this mailbox")
        return JSONResponse(content=result.model_dump(mode="json"))

    return app
