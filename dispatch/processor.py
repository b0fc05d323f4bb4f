"""
Dispatch Processor — one resumable pass over a running job.

A pass:
  1. loads the job and returns early unless it is `running`
  2. takes the processing lease (another live pass → `locked`)
  3. loads the ordered valid recipients from the frozen snapshot, or
     re-resolves the audience when the job has none
  4. resumes at index sent + failed, bounded by batch_size and by the
     max_pass_seconds budget
  5. per recipient: re-reads status, renews the lease, records the label,
     renders and sends, then counts the outcome (no retry of a failed
     recipient) and waits interval_seconds before the next send. The first
     send of a pass waits out whatever is left of the interval since the
     job's last counted send, so pacing holds across passes
  6. completes the job when it is still running and fully processed,
     and always releases the lease

A heartbeat task renews the lease for as long as the pass runs, sends and
sleeps included. Outcomes are counted only while this pass still owns the
lease, so a pass that lost it to a takeover cannot move the counters.

The process may be killed at any await. Progress lives only in the store,
so the next pass recomputes the cursor and carries on.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from audience.resolver import AudienceResolver, filter_valid
from channels.base import ChannelAdapter, ChannelRegistry
from config.settings import DispatchConfig, get_settings
from database.store_base import BaseJobStore
from dispatch.errors import ChannelNotConfigured, JobNotFound
from models.schemas import (
    DispatchJob, ErrorEntry, JobStatus, MessageTemplate, PassOutcome, PassResult, Recipient, SendResult,
)
from templates.renderer import render

logger = structlog.get_logger()

VANISHED_REASON = "Recipient no longer in audience"


class DispatchProcessor:

    def __init__(
        self,
        store: BaseJobStore,
        channels: ChannelRegistry,
        resolver: AudienceResolver,
        config: DispatchConfig = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.channels = channels
        self.resolver = resolver
        self.config = config or get_settings().dispatch
        self._sleep = sleep
        self._clock = clock

    async def process(self, job_id: str, template: Optional[MessageTemplate] = None) -> PassResult:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != JobStatus.RUNNING:
            logger.debug("dispatch_pass_skipped", job_id=job_id, status=job.status.value)
            return PassResult(job_id=job_id, outcome=PassOutcome.NOT_RUNNING,
                              status=job.status, remaining=job.remaining)

        owner = uuid.uuid4().hex
        if not await self.store.claim_job(job_id, owner, self.config.lease_seconds):
            logger.info("dispatch_pass_locked", job_id=job_id)
            return PassResult(job_id=job_id, outcome=PassOutcome.LOCKED,
                              status=job.status, remaining=job.remaining)

        logger.info("dispatch_pass_started", job_id=job_id, owner=owner,
                    processed=job.processed_count, valid=job.valid_candidates)
        try:
            async with self._lease_heartbeat(job_id, owner):
                return await self._run(job, owner, template or job.template)
        finally:
            await self.store.release_job(job_id, owner)

    # ── Lease heartbeat ───────────────────────────────────────

    @asynccontextmanager
    async def _lease_heartbeat(self, job_id: str, owner: str):
        task = asyncio.create_task(self._renew_lease(job_id, owner))
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _renew_lease(self, job_id: str, owner: str) -> None:
        lease = self.config.lease_seconds
        period = max(lease / 3, 0.01)
        while True:
            await asyncio.sleep(period)
            try:
                if not await self.store.renew_lease(job_id, owner, lease):
                    logger.warning("dispatch_lease_renewal_refused", job_id=job_id, owner=owner)
                    return
            except Exception as e:
                logger.warning("dispatch_lease_renewal_error", job_id=job_id, owner=owner, error=str(e))

    # ── Pass body ─────────────────────────────────────────────

    async def _run(self, job: DispatchJob, owner: str, template: MessageTemplate) -> PassResult:
        adapter = self.channels.get(job.channel)
        if adapter is None:
            raise ChannelNotConfigured(job.channel.value)

        start = job.processed_count
        batch = await self._load_batch(job, start)
        deadline = self._clock() + self.config.max_pass_seconds
        sent = failed = 0
        outcome = PassOutcome.YIELDED

        if not batch and job.remaining > 0 and not job.audience_snapshot:
            failed += await self._fail_vanished(job, start, owner)

        for i, recipient in enumerate(batch):
            position = start + i

            if i > 0 and self._clock() >= deadline:
                logger.info("dispatch_pass_budget_exhausted", job_id=job.id, position=position)
                break

            if i == 0:
                await self._wait_out_interval(job)

            current = await self.store.get_job(job.id)
            if current is None or current.status != JobStatus.RUNNING:
                outcome = PassOutcome.STOPPED
                logger.info("dispatch_pass_interrupted", job_id=job.id,
                            status=current.status.value if current else None)
                break
            if current.processed_count != position:
                logger.warning("dispatch_cursor_moved", job_id=job.id,
                               expected=position, actual=current.processed_count)
                break
            if not await self.store.claim_job(job.id, owner, self.config.lease_seconds):
                logger.warning("dispatch_lease_lost", job_id=job.id, owner=owner)
                break

            await self.store.set_current_recipient_label(job.id, recipient.label)
            result = await self._send_one(adapter, template, recipient, job)

            snapshot_position = position if job.audience_snapshot else None
            if result.success:
                recorded = await self.store.increment_sent(job.id, snapshot_position, result.delivery_ref,
                                                           owner=owner)
                sent += int(recorded)
            else:
                entry = ErrorEntry(recipient_id=recipient.id, recipient_label=recipient.label,
                                   reason=result.reason)
                recorded = await self.store.increment_failed(job.id, entry, snapshot_position, owner=owner)
                failed += int(recorded)
                logger.info("dispatch_recipient_failed", job_id=job.id,
                            recipient_id=recipient.id, reason=result.reason)

            if not recorded:
                # a cancel landed while the send was in flight, or the lease was taken over
                logger.warning("dispatch_progress_rejected", job_id=job.id,
                               recipient_id=recipient.id, position=position, success=result.success)
                outcome = PassOutcome.STOPPED
                break

            if job.interval_seconds > 0 and i < len(batch) - 1:
                await self._sleep(job.interval_seconds)

        final = await self.store.get_job(job.id)
        if (
            final is not None
            and final.status == JobStatus.RUNNING
            and final.processed_count >= final.valid_candidates
        ):
            completed = await self.store.compare_and_set_status(
                job.id, JobStatus.RUNNING, JobStatus.COMPLETED,
                completed_at=datetime.now(timezone.utc),
            )
            if completed:
                outcome = PassOutcome.COMPLETED
                logger.info("dispatch_job_completed", job_id=job.id,
                            sent=final.sent_count, failed=final.failed_count)
            final = await self.store.get_job(job.id)

        logger.info("dispatch_pass_finished", job_id=job.id, outcome=outcome.value,
                    sent=sent, failed=failed, remaining=final.remaining if final else 0)
        return PassResult(
            job_id=job.id,
            outcome=outcome,
            status=final.status if final else None,
            sent=sent,
            failed=failed,
            remaining=final.remaining if final else 0,
        )

    async def _load_batch(self, job: DispatchJob, start: int) -> list[Recipient]:
        limit = min(self.config.batch_size, job.remaining)
        if limit <= 0:
            return []
        if job.audience_snapshot:
            return await self.store.get_recipients(job.id, offset=start, limit=limit)

        candidates = await self.resolver.resolve(job.audience_selector)
        valid = filter_valid(candidates, job.channel, self.config.min_chat_address_length)
        return valid[start:start + limit]

    async def _wait_out_interval(self, job: DispatchJob) -> None:
        if job.interval_seconds <= 0 or job.last_send_at is None:
            return
        elapsed = (datetime.now(timezone.utc) - job.last_send_at).total_seconds()
        if elapsed < job.interval_seconds:
            await self._sleep(job.interval_seconds - elapsed)

    async def _fail_vanished(self, job: DispatchJob, start: int, owner: str) -> int:
        """
        A live-resolved audience shrank below the cursor. Count the missing
        positions as failures so the job can still reach `completed`.
        """
        count = 0
        for position in range(start, start + min(self.config.batch_size, job.remaining)):
            entry = ErrorEntry(recipient_id="", recipient_label=f"#{position + 1}", reason=VANISHED_REASON)
            if not await self.store.increment_failed(job.id, entry, owner=owner):
                break
            count += 1
        logger.warning("dispatch_audience_shrunk", job_id=job.id, position=start, failed=count)
        return count

    async def _send_one(self, adapter: ChannelAdapter, template: MessageTemplate,
                        recipient: Recipient, job: DispatchJob) -> SendResult:
        try:
            rendered = render(template, recipient, job.channel)
            return await adapter.send(recipient, rendered.body, rendered.as_metadata())
        except Exception as e:
            logger.error("dispatch_send_crashed", job_id=job.id,
                         recipient_id=recipient.id, error=str(e))
            return SendResult.failed(f"{type(e).__name__}: {e}")
