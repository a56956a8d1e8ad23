"""Persistence and transactional updates of account deletion jobs."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..adapters.sql_errors import sql_transaction
from ..models.deletion_job import DeletionJob, DeletionStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of enqueueing a deletion request.

    ``dispatch`` is True only for the caller that created the job or flipped
    it from ``failed`` back to ``queued``; everyone else must not start a
    second worker.
    """

    job: DeletionJob
    dispatch: bool


class DeletionJobStore:
    """Reads and conditionally updates ``deletion_jobs`` rows.

    Every mutation is a single statement guarded by a WHERE clause on the
    current state, so concurrent callers (in this process or in other worker
    processes) can never both win the same transition.
    """

    def __init__(self, session_factory: async_sessionmaker, clock: Clock = utc_now):
        self._session_factory = session_factory
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    async def get(self, owner_id: str) -> DeletionJob | None:
        async with sql_transaction(self._session_factory, "deletion_jobs.get") as session:
            result = await session.execute(
                select(DeletionJob).where(DeletionJob.owner_id == owner_id)
            )
            return result.scalar_one_or_none()

    async def enqueue(self, owner_id: str) -> EnqueueResult:
        """Create the job, or re-queue it if it failed, or leave it alone.

        Existing ``queued``, ``processing`` and ``completed`` jobs are
        returned without any write.
        """
        job = await self.get(owner_id)
        if job is None:
            created = await self._create(owner_id)
            if created is not None:
                return EnqueueResult(job=created, dispatch=True)
            # Lost the insert race to a concurrent request
            job = await self.get(owner_id)
            if job is None:
                raise RuntimeError(f"Deletion job {owner_id} vanished during enqueue")

        if job.status != DeletionStatus.FAILED.value:
            return EnqueueResult(job=job, dispatch=False)

        now = self.now()
        requeued = await self.update_where(
            owner_id,
            DeletionJob.status == DeletionStatus.FAILED.value,
            status=DeletionStatus.QUEUED.value,
            attempt=0,
            last_error=None,
            last_completed_phase=None,
            failed_at=None,
            requested_at=now,
            updated_at=now,
        )
        if requeued:
            logger.info("account_deletion.job.requeued", extra={"owner_id": owner_id})
        refreshed = await self.get(owner_id)
        return EnqueueResult(job=refreshed or job, dispatch=requeued)

    async def _create(self, owner_id: str) -> DeletionJob | None:
        now = self.now()
        job = DeletionJob(
            owner_id=owner_id,
            status=DeletionStatus.QUEUED.value,
            attempt=0,
            deleted_counts={},
            requested_at=now,
            updated_at=now,
        )
        try:
            async with sql_transaction(
                self._session_factory, "deletion_jobs.create"
            ) as session:
                session.add(job)
        except IntegrityError:
            return None
        logger.info("account_deletion.job.created", extra={"owner_id": owner_id})
        return job

    async def update_where(
        self,
        owner_id: str,
        *conditions: ColumnElement[bool],
        **values: Any,
    ) -> bool:
        """Apply ``values`` iff the row matches ``conditions``.

        This is the transactional read-modify-write primitive the claim
        manager builds on. Returns True when the row was updated.
        """
        stmt = (
            update(DeletionJob)
            .where(DeletionJob.owner_id == owner_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with sql_transaction(
            self._session_factory, "deletion_jobs.update"
        ) as session:
            result = await session.execute(stmt)
            return (result.rowcount or 0) == 1

    async def claimable(self, limit: int = 50) -> list[str]:
        """Owner ids waiting for a worker, oldest request first.

        Includes ``processing`` jobs whose lease expired (crashed worker).
        """
        now = self.now()
        stmt = (
            select(DeletionJob.owner_id)
            .where(
                or_(
                    DeletionJob.status == DeletionStatus.QUEUED.value,
                    and_(
                        DeletionJob.status == DeletionStatus.PROCESSING.value,
                        DeletionJob.lease_expires_at < now,
                    ),
                )
            )
            .order_by(DeletionJob.requested_at)
            .limit(limit)
        )
        async with sql_transaction(
            self._session_factory, "deletion_jobs.claimable"
        ) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
