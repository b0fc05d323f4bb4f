"""
Command Interface — pause / resume / cancel / start as status CAS writes.

Commands never touch counters or recipients. The running Processor sees a
new status on its next per-recipient check; a send already in flight is
allowed to finish.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone

from database.store_base import BaseJobStore
from dispatch.errors import InvalidTransition, JobNotFound
from dispatch.state_machine import COMMANDS, command_target
from models.schemas import JobCommand, JobStatus

logger = structlog.get_logger()

# A CAS that loses a race is re-evaluated against the fresh status this many times
_CAS_ATTEMPTS = 2


class CommandInterface:

    def __init__(self, store: BaseJobStore):
        self.store = store

    async def apply(self, job_id: str, command: JobCommand | str) -> JobStatus:
        """Apply `command` and return the job's new status."""
        command = JobCommand(command)

        for _ in range(_CAS_ATTEMPTS):
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)

            target = command_target(command, job.status, job_id)
            stamps = {}
            if target == JobStatus.RUNNING and job.started_at is None:
                stamps["started_at"] = datetime.now(timezone.utc)

            if await self.store.compare_and_set_status(job_id, job.status, target, **stamps):
                logger.info("job_command_applied", job_id=job_id, command=command.value,
                            from_status=job.status.value, to_status=target.value)
                return target

            logger.info("job_command_conflict", job_id=job_id, command=command.value,
                        seen_status=job.status.value)

        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        raise InvalidTransition(job_id, job.status.value, COMMANDS[command][1].value)

    async def start(self, job_id: str) -> JobStatus:
        return await self.apply(job_id, JobCommand.START)

    async def pause(self, job_id: str) -> JobStatus:
        return await self.apply(job_id, JobCommand.PAUSE)

    async def resume(self, job_id: str) -> JobStatus:
        return await self.apply(job_id, JobCommand.RESUME)

    async def cancel(self, job_id: str) -> JobStatus:
        return await self.apply(job_id, JobCommand.CANCEL)

