"""Lease-based mutual exclusion over deletion jobs."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, or_

from ..models.deletion_job import DeletionJob, DeletionStatus
from .deletion_jobs import DeletionJobStore

logger = logging.getLogger(__name__)

_RELEASE_STATUSES = {
    DeletionStatus.QUEUED,
    DeletionStatus.FAILED,
    DeletionStatus.COMPLETED,
}


class ClaimManager:
    """Grants, extends and releases the per-account worker lease.

    The lease lives on the job row itself. Every successful ``claim`` mints a
    new ``lease_token``; the pass that received it holds the lease while
    ``status == processing``, the row carries that token and
    ``lease_expires_at`` is in the future. A lease that expired without
    being released belongs to a crashed or stalled pass and may be claimed
    again, even by the same worker, after which the old token is dead.
    """

    def __init__(self, job_store: DeletionJobStore, lease_seconds: float = 90.0):
        self.job_store = job_store
        self.lease_seconds = lease_seconds

    def _lease_until(self, now: datetime, lease_seconds: float | None) -> datetime:
        seconds = self.lease_seconds if lease_seconds is None else lease_seconds
        return now + timedelta(seconds=seconds)

    @staticmethod
    def _held_by(lease_token: str, now: datetime) -> list[ColumnElement[bool]]:
        return [
            DeletionJob.status == DeletionStatus.PROCESSING.value,
            DeletionJob.lease_token == lease_token,
            DeletionJob.lease_expires_at >= now,
        ]

    async def claim(
        self, owner_id: str, worker_id: str, lease_seconds: float | None = None
    ) -> str | None:
        """Take the lease if the job is queued or its previous holder expired.

        Returns the lease token for ``extend`` and ``release``, or None.
        """
        now = self.job_store.now()
        lease_token = uuid.uuid4().hex
        claimed = await self.job_store.update_where(
            owner_id,
            or_(
                DeletionJob.status == DeletionStatus.QUEUED.value,
                and_(
                    DeletionJob.status == DeletionStatus.PROCESSING.value,
                    or_(
                        DeletionJob.lease_expires_at.is_(None),
                        DeletionJob.lease_expires_at < now,
                    ),
                ),
            ),
            status=DeletionStatus.PROCESSING.value,
            worker_id=worker_id,
            lease_token=lease_token,
            lease_expires_at=self._lease_until(now, lease_seconds),
            attempt=DeletionJob.attempt + 1,
            started_at=now,
            updated_at=now,
        )
        if claimed:
            logger.info(
                "account_deletion.lease.claimed",
                extra={"owner_id": owner_id, "worker_id": worker_id},
            )
        else:
            logger.debug(
                "account_deletion.lease.not_claimed",
                extra={"owner_id": owner_id, "worker_id": worker_id},
            )
        return lease_token if claimed else None

    async def extend(
        self,
        owner_id: str,
        lease_token: str,
        lease_seconds: float | None = None,
        last_completed_phase: int | None = None,
    ) -> bool:
        """Push the lease forward; False means the caller lost it."""
        now = self.job_store.now()
        values: dict[str, Any] = {
            "lease_expires_at": self._lease_until(now, lease_seconds),
            "updated_at": now,
        }
        if last_completed_phase is not None:
            values["last_completed_phase"] = last_completed_phase
        extended = await self.job_store.update_where(
            owner_id, *self._held_by(lease_token, now), **values
        )
        if not extended:
            logger.warning(
                "account_deletion.lease.lost",
                extra={"owner_id": owner_id, "lease_token": lease_token},
            )
        return extended

    async def release(
        self,
        owner_id: str,
        lease_token: str,
        next_status: DeletionStatus,
        last_error: str | None = None,
        deleted_counts: dict[str, int] | None = None,
    ) -> bool:
        """Give the lease up, moving the job to ``next_status``.

        A no-op (returning False) when the caller no longer holds the lease,
        so a pass that was presumed dead can never overwrite the state
        written by the worker that reclaimed the job.
        """
        if next_status not in _RELEASE_STATUSES:
            raise ValueError(f"Cannot release a job into status {next_status.value}")

        now = self.job_store.now()
        values: dict[str, Any] = {
            "status": next_status.value,
            "worker_id": None,
            "lease_token": None,
            "lease_expires_at": None,
            "updated_at": now,
            "last_error": last_error,
        }
        if next_status is DeletionStatus.COMPLETED:
            values["completed_at"] = now
            values["last_error"] = None
        elif next_status is DeletionStatus.FAILED:
            values["failed_at"] = now
        if deleted_counts is not None:
            values["deleted_counts"] = dict(deleted_counts)

        released = await self.job_store.update_where(
            owner_id, *self._held_by(lease_token, now), **values
        )
        if released:
            logger.info(
                "account_deletion.lease.released",
                extra={
                    "owner_id": owner_id,
                    "lease_token": lease_token,
                    "status": next_status.value,
                },
            )
        else:
            logger.warning(
                "account_deletion.lease.release_skipped",
                extra={
                    "owner_id": owner_id,
                    "lease_token": lease_token,
                    "status": next_status.value,
                },
            )
        return released
