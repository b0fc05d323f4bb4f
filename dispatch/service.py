"""
Dispatch Service — the external surface of the dispatcher.

  create_job      resolve + validate the audience, snapshot it, persist the job
  command         pause / resume / cancel / start
  get_status      JobStatusView for one job
  list_jobs       JobStatusView for many jobs
  continue_jobs   one Continuation Sweeper tick (idempotent)

The HTTP layer (api/main.py), the ticker and the scripts all go through
this class; none of them touch the store directly.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from audience.resolver import AudienceResolver, create_audience_resolver, filter_valid
from channels.base import ChannelRegistry
from channels.chat_adapter import ChatAdapter
from channels.email_adapter import EmailAdapter
from config.settings import Settings, get_settings
from database.store_base import BaseJobStore
from database.store_factory import create_store
from dispatch.commands import CommandInterface
from dispatch.errors import ChannelNotConfigured, EmptyAudience, JobNotFound
from dispatch.processor import DispatchProcessor
from dispatch.sweeper import ContinuationSweeper
from models.schemas import (
    ChannelType, DispatchJob, JobCommand, JobStatus, JobStatusView, MessageTemplate, SweepResult,
)

logger = structlog.get_logger()


class DispatchService:

    def __init__(
        self,
        store: BaseJobStore,
        channels: ChannelRegistry,
        resolver: AudienceResolver,
        settings: Settings = None,
        processor: DispatchProcessor = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.channels = channels
        self.resolver = resolver
        self.processor = processor or DispatchProcessor(store, channels, resolver, self.settings.dispatch)
        self.sweeper = ContinuationSweeper(
            store, self.processor, activate_pending=self.settings.scheduler.activate_pending,
        )
        self.commands = CommandInterface(store)

    # ── Create ────────────────────────────────────────────────

    async def create_job(
        self,
        channel: ChannelType | str,
        audience_selector: str,
        template: MessageTemplate,
        interval_seconds: Optional[float] = None,
        scheduled_at: Optional[datetime] = None,
        start: Optional[bool] = None,
    ) -> DispatchJob:
        """
        Resolve the audience and persist a new job. Nothing is written when
        the selector is invalid or no candidate is reachable on `channel`.
        """
        cfg = self.settings.dispatch
        channel = ChannelType(channel)
        if self.channels.get(channel) is None:
            raise ChannelNotConfigured(channel.value)

        candidates = await self.resolver.resolve(audience_selector)
        valid = filter_valid(candidates, channel, cfg.min_chat_address_length)
        if not valid:
            raise EmptyAudience(audience_selector, channel.value)

        now = datetime.now(timezone.utc)
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        start = cfg.start_immediately if start is None else start
        run_now = start and (scheduled_at is None or scheduled_at <= now)

        job = DispatchJob(
            channel=channel,
            audience_selector=audience_selector,
            template=template,
            total_candidates=len(candidates),
            valid_candidates=len(valid),
            interval_seconds=cfg.default_interval_seconds if interval_seconds is None else interval_seconds,
            status=JobStatus.RUNNING if run_now else JobStatus.PENDING,
            scheduled_at=scheduled_at,
            started_at=now if run_now else None,
        )
        job = await self.store.create_job(job, valid if cfg.snapshot_audience else None)
        logger.info("dispatch_job_created", job_id=job.id, channel=channel.value,
                    selector=audience_selector, total=job.total_candidates,
                    valid=job.valid_candidates, status=job.status.value)

        if run_now:
            self.sweeper.dispatch(job.id)
        return job

    # ── Commands ──────────────────────────────────────────────

    async def command(self, job_id: str, command: JobCommand | str) -> JobStatus:
        status = await self.commands.apply(job_id, command)
        if status == JobStatus.RUNNING:
            self.sweeper.dispatch(job_id)
        return status

    # ── Reads ─────────────────────────────────────────────────

    async def get_status(self, job_id: str) -> JobStatusView:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job.to_status_view()

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[JobStatusView]:
        jobs = await self.store.list_jobs(status=status, limit=limit)
        return [j.to_status_view() for j in jobs]

    # ── Continuation ──────────────────────────────────────────

    async def continue_jobs(self) -> SweepResult:
        return await self.sweeper.sweep()

    async def drain(self, timeout: Optional[float] = None) -> None:
        await self.sweeper.drain(timeout)

    async def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        await self.drain(timeout)
        await self.channels.shutdown_all()
        await self.resolver.close()


async def build_channel_registry(settings: Settings = None) -> ChannelRegistry:
    """Register an adapter per enabled channel (every channel when none is configured)."""
    settings = settings or get_settings()
    registry = ChannelRegistry()
    for adapter_cls in (EmailAdapter, ChatAdapter):
        cfg = settings.channels.get(adapter_cls.channel_type.value)
        if settings.channels and (cfg is None or not cfg.enabled):
            continue
        registry.register(adapter_cls())
    await registry.initialize_all(settings.channels)
    return registry


async def create_service(settings: Settings = None, **overrides) -> DispatchService:
    """Wire a DispatchService from settings; keyword overrides replace single parts."""
    settings = settings or get_settings()
    store = overrides.get("store") or create_store(settings.database)
    channels = overrides.get("channels") or await build_channel_registry(settings)
    resolver = overrides.get("resolver") or create_audience_resolver(settings.audience)
    return DispatchService(store, channels, resolver, settings)
