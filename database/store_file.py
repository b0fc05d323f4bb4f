"""
FileJobStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    jobs.json          {job_id: job}
    recipients.json    {job_id: [snapshot rows]}

Features:
  - Survives process restarts (unlike InMemoryJobStore)
  - No external dependencies (no database server)
  - Flush on every successful mutation, or batched with flush_interval_s
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_base import ExpectedStatus
from database.store_memory import InMemoryJobStore
from models.schemas import DispatchJob, ErrorEntry, JobStatus, Recipient

logger = structlog.get_logger()

_COLLECTIONS = ["jobs", "recipients"]


class FileJobStore(InMemoryJobStore):
    """
    Extends InMemoryJobStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every accepted write: flushes the changed collection to disk.
    Rejected writes (a lost CAS, a terminal job) touch nothing.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            self._set_collection(collection, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        if collection == "jobs":
            self._jobs = {jid: DispatchJob.model_validate(j) for jid, j in data.items()}
        elif collection == "recipients":
            self._recipients = data

    def _get_collection_data(self, collection: str) -> Any:
        if collection == "jobs":
            return {jid: j.model_dump(mode="json") for jid, j in self._jobs.items()}
        return self._recipients

    def _flush_collection(self, collection: str):
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, default=str)
        tmp_path.replace(path)

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def create_job(self, job: DispatchJob,
                         recipients: Optional[list[Recipient]] = None) -> DispatchJob:
        result = await super().create_job(job, recipients)
        self._mark_dirty("jobs", "recipients")
        return result

    async def compare_and_set_status(self, job_id: str, expected: ExpectedStatus,
                                     new: JobStatus, **stamps) -> bool:
        ok = await super().compare_and_set_status(job_id, expected, new, **stamps)
        if ok:
            self._mark_dirty("jobs")
        return ok

    async def increment_sent(self, job_id: str, position: Optional[int] = None,
                             delivery_ref: Optional[str] = None, owner: Optional[str] = None) -> bool:
        ok = await super().increment_sent(job_id, position, delivery_ref, owner)
        if ok:
            self._mark_dirty("jobs", "recipients")
        return ok

    async def increment_failed(self, job_id: str, entry: ErrorEntry,
                               position: Optional[int] = None, owner: Optional[str] = None) -> bool:
        ok = await super().increment_failed(job_id, entry, position, owner)
        if ok:
            self._mark_dirty("jobs", "recipients")
        return ok

    async def set_current_recipient_label(self, job_id: str, label: Optional[str]) -> None:
        await super().set_current_recipient_label(job_id, label)
        self._mark_dirty("jobs")

    async def claim_job(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        ok = await super().claim_job(job_id, owner, lease_seconds)
        if ok:
            self._mark_dirty("jobs")
        return ok

    async def renew_lease(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        ok = await super().renew_lease(job_id, owner, lease_seconds)
        if ok:
            self._mark_dirty("jobs")
        return ok

    async def release_job(self, job_id: str, owner: str) -> None:
        await super().release_job(job_id, owner)
        self._mark_dirty("jobs")
