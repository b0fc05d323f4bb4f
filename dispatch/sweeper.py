"""
Continuation Sweeper — the periodic "continue" entry point.

Each sweep():
  - activates `pending` jobs whose scheduled_at is due (when enabled)
  - completes `running` jobs with nothing left to send
  - starts a background Processor pass for every other `running` job

Sweeps are idempotent: with no running jobs a sweep changes nothing and
returns an empty summary. A failure on one job is logged and never stops
the sweep from reaching the others. Overlapping sweeps are safe because a
pass must hold the job's lease before it sends anything.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseJobStore
from dispatch.processor import DispatchProcessor
from models.schemas import JobStatus, PassResult, SweepAction, SweepEntry, SweepResult

logger = structlog.get_logger()


class ContinuationSweeper:

    def __init__(
        self,
        store: BaseJobStore,
        processor: DispatchProcessor,
        activate_pending: bool = True,
        scan_limit: int = 500,
    ):
        self.store = store
        self.processor = processor
        self.activate_pending = activate_pending
        self.scan_limit = scan_limit
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def inflight(self) -> list[str]:
        return [job_id for job_id, task in self._inflight.items() if not task.done()]

    async def sweep(self) -> SweepResult:
        result = SweepResult()

        if self.activate_pending:
            result.entries.extend(await self._activate_due())

        running = await self.store.list_jobs(status=JobStatus.RUNNING, limit=self.scan_limit)
        result.scanned = len(running)

        for job in running:
            try:
                if job.remaining <= 0:
                    done = await self.store.compare_and_set_status(
                        job.id, JobStatus.RUNNING, JobStatus.COMPLETED,
                        completed_at=datetime.now(timezone.utc),
                    )
                    if done:
                        logger.info("sweeper_job_completed", job_id=job.id)
                        result.entries.append(SweepEntry(job_id=job.id, action=SweepAction.COMPLETED))
                    continue

                if job.id in self.inflight:
                    # this process already has a pass going; the lease guards other processes
                    continue
                self.dispatch(job.id)
                result.entries.append(SweepEntry(job_id=job.id, action=SweepAction.DISPATCHED,
                                                 detail=f"remaining={job.remaining}"))
            except Exception as e:
                logger.error("sweeper_job_error", job_id=job.id, error=str(e))
                result.entries.append(SweepEntry(job_id=job.id, action=SweepAction.ERROR, detail=str(e)))

        if not result.is_empty:
            logger.info("sweep_finished", scanned=result.scanned, actions=len(result.entries))
        return result

    async def _activate_due(self) -> list[SweepEntry]:
        entries: list[SweepEntry] = []
        now = datetime.now(timezone.utc)
        pending = await self.store.list_jobs(status=JobStatus.PENDING, limit=self.scan_limit)
        for job in pending:
            if job.scheduled_at is None or job.scheduled_at > now:
                continue
            try:
                if await self.store.compare_and_set_status(job.id, JobStatus.PENDING, JobStatus.RUNNING,
                                                           started_at=now):
                    logger.info("sweeper_job_activated", job_id=job.id)
                    entries.append(SweepEntry(job_id=job.id, action=SweepAction.ACTIVATED))
            except Exception as e:
                logger.error("sweeper_activation_error", job_id=job.id, error=str(e))
                entries.append(SweepEntry(job_id=job.id, action=SweepAction.ERROR, detail=str(e)))
        return entries

    # ── Background passes ─────────────────────────────────────

    def dispatch(self, job_id: str) -> asyncio.Task:
        """Start a Processor pass without waiting for it."""
        task = asyncio.create_task(self._run_pass(job_id), name=f"dispatch_pass:{job_id}")
        self._inflight[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._forget(jid, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(job_id) is task:
            del self._inflight[job_id]

    async def _run_pass(self, job_id: str) -> Optional[PassResult]:
        try:
            return await self.processor.process(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("dispatch_pass_failed", job_id=job_id, error=str(e))
            return None

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight passes. Stragglers are cancelled after `timeout`."""
        tasks = [t for t in self._inflight.values() if not t.done()]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("sweeper_drain_cancelled", count=len(pending))
