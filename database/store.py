"""
SqlJobStore — Portable SQL job store for PostgreSQL, MySQL, SQLite.

Every mutation is one conditional UPDATE inside one transaction, and the
row count decides whether it took effect. That keeps the store safe when
two processes (an overlapping sweeper tick, a command from the API) touch
the same job.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, or_

from database.models import DispatchErrorRow, DispatchJobRow, DispatchRecipientRow
from database.session import get_session
from database.store_base import (
    BaseJobStore, ExpectedStatus, ROW_FAILED, ROW_PENDING, ROW_SENT, STAMP_FIELDS, expected_set,
)
from models.schemas import (
    ChannelType, DispatchJob, ErrorEntry, JobStatus, MessageTemplate, Recipient, TERMINAL_STATUSES,
)

logger = structlog.get_logger()

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Jobs ──────────────────────────────────────────────

    async def create_job(self, job: DispatchJob,
                         recipients: Optional[list[Recipient]] = None) -> DispatchJob:
        job = job.model_copy(deep=True)
        if recipients is not None:
            job.audience_snapshot = True

        async with get_session() as db:
            db.add(DispatchJobRow(
                id=job.id,
                channel=job.channel.value,
                audience_selector=job.audience_selector,
                template=job.template.model_dump(mode="json"),
                total_candidates=job.total_candidates,
                valid_candidates=job.valid_candidates,
                sent_count=job.sent_count,
                failed_count=job.failed_count,
                status=job.status.value,
                interval_seconds=job.interval_seconds,
                audience_snapshot=job.audience_snapshot,
                scheduled_at=job.scheduled_at,
                created_at=job.created_at,
                started_at=job.started_at,
                updated_at=job.updated_at,
            ))
            # parent row must exist before the snapshot rows reference it
            await db.flush()
            for position, r in enumerate(recipients or []):
                db.add(DispatchRecipientRow(
                    job_id=job.id,
                    position=position,
                    recipient_id=r.id,
                    recipient=r.model_dump(mode="json"),
                    status=ROW_PENDING,
                ))

        logger.info("sql_job_created", job_id=job.id,
                    snapshot_rows=len(recipients) if recipients is not None else 0)
        return job

    async def get_job(self, job_id: str) -> Optional[DispatchJob]:
        async with get_session() as db:
            row = await db.get(DispatchJobRow, job_id)
            if row is None:
                return None
            errors = await self._load_errors(db, [job_id])
            return self._row_to_job(row, errors.get(job_id, []))

    async def list_jobs(self, status: Optional[ExpectedStatus] = None,
                        limit: int = 100) -> list[DispatchJob]:
        async with get_session() as db:
            stmt = select(DispatchJobRow).order_by(DispatchJobRow.created_at).limit(limit)
            if status is not None:
                stmt = stmt.where(DispatchJobRow.status.in_([s.value for s in expected_set(status)]))
            rows = list((await db.execute(stmt)).scalars())
            errors = await self._load_errors(db, [r.id for r in rows])
            return [self._row_to_job(r, errors.get(r.id, [])) for r in rows]

    # ── Status ────────────────────────────────────────────

    async def compare_and_set_status(self, job_id: str, expected: ExpectedStatus,
                                     new: JobStatus, **stamps) -> bool:
        values: dict[str, Any] = {"status": new.value, "updated_at": _utcnow()}
        values.update({k: v for k, v in stamps.items() if k in STAMP_FIELDS})
        if new in TERMINAL_STATUSES:
            values.update(lease_owner=None, lease_expires_at=None, current_recipient_label=None)

        conditions = [
            DispatchJobRow.id == job_id,
            DispatchJobRow.status.in_([s.value for s in expected_set(expected)]),
            DispatchJobRow.status.not_in(_TERMINAL_VALUES),
        ]
        if new == JobStatus.COMPLETED:
            conditions.append(
                DispatchJobRow.sent_count + DispatchJobRow.failed_count >= DispatchJobRow.valid_candidates
            )

        async with get_session() as db:
            result = await db.execute(
                update(DispatchJobRow).where(and_(*conditions)).values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ── Counters ──────────────────────────────────────────

    async def _advance(self, db, job_id: str, counter: str, position: Optional[int],
                       row_status: str, delivery_ref: Optional[str] = None,
                       owner: Optional[str] = None) -> bool:
        """Bump one counter and mark the snapshot row, all-or-nothing within `db`."""
        column = getattr(DispatchJobRow, counter)
        conditions = [
            DispatchJobRow.id == job_id,
            DispatchJobRow.status.not_in(_TERMINAL_VALUES),
            DispatchJobRow.sent_count + DispatchJobRow.failed_count < DispatchJobRow.valid_candidates,
        ]
        if owner is not None:
            conditions.append(DispatchJobRow.lease_owner == owner)
        now = _utcnow()
        result = await db.execute(
            update(DispatchJobRow)
            .where(and_(*conditions))
            .values({counter: column + 1, "updated_at": now, "last_send_at": now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        if position is None:
            return True

        marked = await db.execute(
            update(DispatchRecipientRow)
            .where(and_(
                DispatchRecipientRow.job_id == job_id,
                DispatchRecipientRow.position == position,
                DispatchRecipientRow.status == ROW_PENDING,
            ))
            .values(status=row_status, delivery_ref=delivery_ref, processed_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount == 1:
            return True

        has_snapshot = await db.scalar(
            select(DispatchJobRow.audience_snapshot).where(DispatchJobRow.id == job_id)
        )
        if has_snapshot:
            await db.rollback()
            return False
        return True

    async def increment_sent(self, job_id: str, position: Optional[int] = None,
                             delivery_ref: Optional[str] = None, owner: Optional[str] = None) -> bool:
        async with get_session() as db:
            return await self._advance(db, job_id, "sent_count", position, ROW_SENT, delivery_ref, owner)

    async def increment_failed(self, job_id: str, entry: ErrorEntry,
                               position: Optional[int] = None, owner: Optional[str] = None) -> bool:
        async with get_session() as db:
            if not await self._advance(db, job_id, "failed_count", position, ROW_FAILED, owner=owner):
                return False
            db.add(DispatchErrorRow(
                job_id=job_id,
                recipient_id=entry.recipient_id,
                recipient_label=entry.recipient_label,
                reason=entry.reason,
                timestamp=entry.timestamp,
            ))
            return True

    async def set_current_recipient_label(self, job_id: str, label: Optional[str]) -> None:
        async with get_session() as db:
            await db.execute(
                update(DispatchJobRow)
                .where(and_(DispatchJobRow.id == job_id, DispatchJobRow.status.not_in(_TERMINAL_VALUES)))
                .values(current_recipient_label=label[:256] if label else label)
                .execution_options(synchronize_session=False)
            )

    # ── Lease ─────────────────────────────────────────────

    async def claim_job(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        now = _utcnow()
        async with get_session() as db:
            result = await db.execute(
                update(DispatchJobRow)
                .where(and_(
                    DispatchJobRow.id == job_id,
                    DispatchJobRow.status == JobStatus.RUNNING.value,
                    or_(
                        DispatchJobRow.lease_owner.is_(None),
                        DispatchJobRow.lease_owner == owner,
                        DispatchJobRow.lease_expires_at.is_(None),
                        DispatchJobRow.lease_expires_at <= now,
                    ),
                ))
                .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def renew_lease(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(DispatchJobRow)
                .where(and_(
                    DispatchJobRow.id == job_id,
                    DispatchJobRow.lease_owner == owner,
                    DispatchJobRow.status.not_in(_TERMINAL_VALUES),
                ))
                .values(lease_expires_at=_utcnow() + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release_job(self, job_id: str, owner: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(DispatchJobRow)
                .where(and_(DispatchJobRow.id == job_id, DispatchJobRow.lease_owner == owner))
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    # ── Snapshot ──────────────────────────────────────────

    async def get_recipients(self, job_id: str, offset: int = 0,
                             limit: Optional[int] = None) -> list[Recipient]:
        async with get_session() as db:
            stmt = (
                select(DispatchRecipientRow.recipient)
                .where(DispatchRecipientRow.job_id == job_id)
                .order_by(DispatchRecipientRow.position)
                .offset(offset)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [Recipient.model_validate(r) for r in (await db.execute(stmt)).scalars()]

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    async def _load_errors(db, job_ids: list[str]) -> dict[str, list[ErrorEntry]]:
        if not job_ids:
            return {}
        stmt = (
            select(DispatchErrorRow)
            .where(DispatchErrorRow.job_id.in_(job_ids))
            .order_by(DispatchErrorRow.timestamp, DispatchErrorRow.id)
        )
        grouped: dict[str, list[ErrorEntry]] = {}
        for row in (await db.execute(stmt)).scalars():
            grouped.setdefault(row.job_id, []).append(ErrorEntry(
                recipient_id=row.recipient_id,
                recipient_label=row.recipient_label,
                reason=row.reason,
                timestamp=_as_utc(row.timestamp),
            ))
        return grouped

    @staticmethod
    def _row_to_job(row: DispatchJobRow, errors: list[ErrorEntry]) -> DispatchJob:
        return DispatchJob(
            id=row.id,
            channel=ChannelType(row.channel),
            audience_selector=row.audience_selector,
            template=MessageTemplate.model_validate(row.template or {"body": ""}),
            total_candidates=row.total_candidates,
            valid_candidates=row.valid_candidates,
            sent_count=row.sent_count,
            failed_count=row.failed_count,
            status=JobStatus(row.status),
            current_recipient_label=row.current_recipient_label,
            error_log=errors,
            interval_seconds=row.interval_seconds,
            audience_snapshot=bool(row.audience_snapshot),
            lease_owner=row.lease_owner,
            lease_expires_at=_as_utc(row.lease_expires_at),
            last_send_at=_as_utc(row.last_send_at),
            scheduled_at=_as_utc(row.scheduled_at),
            created_at=_as_utc(row.created_at),
            started_at=_as_utc(row.started_at),
            updated_at=_as_utc(row.updated_at),
            completed_at=_as_utc(row.completed_at),
        )
