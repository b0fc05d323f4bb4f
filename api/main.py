"""
FastAPI Application — REST API for bulk dispatch jobs.

Provides:
- Job creation, listing and status reads
- pause / resume / cancel / start commands
- The idempotent "continue" trigger for external schedulers
- Email suppression webhooks (bounce, complaint, unsubscribe)
- Channel health
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.settings import get_settings
from database.session import close_db, init_db
from dispatch.errors import DispatchError
from dispatch.service import DispatchService, create_service
from dispatch.ticker import ContinuationTicker
from models.schemas import (
    ChannelType, JobCommand, JobStatus, JobStatusView, MessageTemplate, SweepResult,
)

logger = structlog.get_logger()

_ERROR_STATUS = {
    "invalid_selector": 422,
    "empty_audience": 422,
    "channel_not_configured": 422,
    "not_found": 404,
    "invalid_transition": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    service = await create_service(settings)
    ticker = ContinuationTicker(service, interval_s=settings.scheduler.interval_seconds)
    app.state.service = service
    app.state.ticker = ticker

    if settings.scheduler.enabled:
        await ticker.start()

    logger.info("dispatcher_started",
                store_backend=settings.database.store_backend,
                channels=[c.value for c in service.channels.get_available()],
                ticker=settings.scheduler.enabled)
    yield

    await ticker.stop()
    await service.shutdown()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("dispatcher_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Bulk Dispatcher API",
    description="Resumable multi-channel bulk message dispatch",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    status = _ERROR_STATUS.get(exc.code, 400)
    logger.info("dispatch_request_rejected", path=request.url.path, code=exc.code, status=status)
    return JSONResponse(status_code=status, content={"error": exc.code, "detail": str(exc)})


def _service(request: Request) -> DispatchService:
    return request.app.state.service


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class CreateDispatchRequest(BaseModel):
    channel: ChannelType
    audience_selector: str = Field(min_length=1)
    template: MessageTemplate
    interval_seconds: Optional[float] = Field(default=None, ge=0)
    scheduled_at: Optional[datetime] = None
    start: Optional[bool] = None


class CommandRequest(BaseModel):
    command: JobCommand


class SuppressionRequest(BaseModel):
    email: str
    type: str = "permanent"


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    service = _service(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "channels": await service.channels.health_check_all(),
        "ticker_running": request.app.state.ticker.running,
        "inflight_jobs": service.sweeper.inflight,
    }


# ══════════════════════════════════════════════════════════════
#  DISPATCH JOBS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/dispatches", status_code=201)
async def create_dispatch(req: CreateDispatchRequest, request: Request):
    job = await _service(request).create_job(
        channel=req.channel,
        audience_selector=req.audience_selector,
        template=req.template,
        interval_seconds=req.interval_seconds,
        scheduled_at=req.scheduled_at,
        start=req.start,
    )
    return {
        "job_id": job.id,
        "status": job.status.value,
        "total_candidates": job.total_candidates,
        "valid_candidates": job.valid_candidates,
    }


@app.get("/api/v1/dispatches", response_model=list[JobStatusView])
async def list_dispatches(
    request: Request,
    status: Optional[JobStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    return await _service(request).list_jobs(status=status, limit=limit)


# registered before /{job_id} so "continue" is not read as a job id
@app.post("/api/v1/dispatches/continue", response_model=SweepResult)
async def continue_dispatches(request: Request):
    """Continuation trigger for cron / external schedulers. Idempotent."""
    return await _service(request).continue_jobs()


@app.get("/api/v1/dispatches/{job_id}", response_model=JobStatusView)
async def get_dispatch(job_id: str, request: Request):
    return await _service(request).get_status(job_id)


@app.post("/api/v1/dispatches/{job_id}/commands")
async def command_dispatch(job_id: str, req: CommandRequest, request: Request):
    status = await _service(request).command(job_id, req.command)
    return {"job_id": job_id, "status": status.value}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — Email suppression
# ══════════════════════════════════════════════════════════════

def _email_adapter(request: Request):
    adapter = _service(request).channels.get(ChannelType.EMAIL)
    if adapter is None:
        raise HTTPException(404, "Email channel not configured")
    return adapter


@app.post("/webhooks/email/bounce")
async def email_bounce(req: SuppressionRequest, request: Request) -> dict[str, Any]:
    return await _email_adapter(request).handle_bounce({"email": req.email, "type": req.type})


@app.post("/webhooks/email/complaint")
async def email_complaint(req: SuppressionRequest, request: Request) -> dict[str, Any]:
    return await _email_adapter(request).handle_complaint({"email": req.email})


@app.post("/webhooks/email/unsubscribe")
async def email_unsubscribe(req: SuppressionRequest, request: Request) -> dict[str, Any]:
    return await _email_adapter(request).handle_unsubscribe(req.email)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000)
