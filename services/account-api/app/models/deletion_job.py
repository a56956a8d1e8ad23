"""Deletion job model tracking one account's deletion lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base


class DeletionStatus(str, Enum):
    """Status of an account deletion job.

    ``NOT_REQUESTED`` is never stored; it is what the status query reports
    when no row exists for the account.
    """

    NOT_REQUESTED = "not_requested"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeletionJob(Base):
    """One row per account. Kept after completion as an audit record."""

    __tablename__ = "deletion_jobs"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeletionStatus.QUEUED.value,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease held by the worker currently processing the job
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Fresh per claim, so a stalled pass of the same worker cannot pass as
    # the holder after the job was reclaimed
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_completed_phase: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deleted_counts: Mapped[dict[str, Any]] = mapped_column(
        MutableDict.as_mutable(JSON),
        nullable=False,
        default=dict,
    )

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def job_id(self) -> str:
        return self.owner_id

    def __repr__(self) -> str:
        return (
            f"<DeletionJob(owner_id={self.owner_id}, status={self.status}, "
            f"attempt={self.attempt})>"
        )
