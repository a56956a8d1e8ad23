"""Schemas for account deletion."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..services.deletion_jobs import as_utc


class AccountDeletionRequestResponse(BaseModel):
    """Response after requesting account deletion."""

    model_config = ConfigDict(populate_by_name=True)

    accepted: bool
    status: str
    job_id: str = Field(alias="jobId")


class AccountDeletionStatusResponse(BaseModel):
    """Pollable snapshot of an account deletion job."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    job_id: str | None = Field(default=None, alias="jobId")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    last_error: str | None = Field(default=None, alias="lastError")

    @field_serializer("updated_at", "completed_at")
    def serialize_timestamp(self, value: datetime | None) -> str | None:
        value = as_utc(value)
        if value is None:
            return None
        return value.isoformat().replace("+00:00", "Z")
