"""Tests for account deletion intake and status queries."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.models.deletion_job import DeletionStatus
from app.services import account_deletion
from app.services.account_deletion import (
    get_account_deletion_status,
    request_account_deletion,
    validate_owner_id,
)
from app.services.deletion_errors import (
    AccountDeletionValidationError,
    NotAuthenticatedError,
    TransientStoreError,
)


class TestValidateOwnerId:
    @pytest.mark.parametrize("owner_id", ["alice", "uid_123-XYZ", "a" * 128])
    def test_accepts_path_safe_ids(self, owner_id: str) -> None:
        assert validate_owner_id(owner_id) == owner_id

    @pytest.mark.parametrize(
        "owner_id", ["", "   ", "a/b", "..", " alice", "a" * 129, None, 42]
    )
    def test_rejects_malformed_ids(self, owner_id) -> None:
        with pytest.raises(AccountDeletionValidationError) as exc_info:
            validate_owner_id(owner_id)
        assert exc_info.value.code == "VALIDATION"


@pytest.mark.asyncio
async def test_first_request_queues_and_dispatches(job_store):
    response, dispatch = await request_account_deletion(job_store, "alice")

    assert dispatch is True
    assert response.accepted is True
    assert response.status == DeletionStatus.QUEUED.value
    assert response.job_id == "alice"


@pytest.mark.asyncio
async def test_repeat_request_returns_existing_status(job_store):
    await request_account_deletion(job_store, "alice")

    response, dispatch = await request_account_deletion(job_store, "alice")

    assert dispatch is False
    assert response.accepted is True
    assert response.status == DeletionStatus.QUEUED.value


@pytest.mark.asyncio
async def test_concurrent_requests_create_one_job(job_store):
    results = await asyncio.gather(
        *(request_account_deletion(job_store, "alice") for _ in range(10))
    )

    assert [dispatch for _, dispatch in results].count(True) == 1
    assert {response.job_id for response, _ in results} == {"alice"}
    assert all(response.accepted for response, _ in results)


@pytest.mark.asyncio
async def test_request_revokes_existing_sessions(job_store):
    identities = AsyncMock()

    await request_account_deletion(job_store, "alice", identities)

    identities.revoke_sessions.assert_awaited_once_with("alice")


@pytest.mark.asyncio
async def test_revocation_failure_does_not_fail_request(job_store):
    identities = AsyncMock()
    identities.revoke_sessions.side_effect = TransientStoreError(
        "db down", "identities.revoke_sessions"
    )

    with patch.object(account_deletion.logger, "warning") as log_warning:
        response, dispatch = await request_account_deletion(
            job_store, "alice", identities
        )

    assert dispatch is True
    assert response.status == DeletionStatus.QUEUED.value
    log_warning.assert_called_once()
    assert log_warning.call_args.args[0] == "account_deletion.revoke_sessions_failed"
    assert (await job_store.get("alice")).status == DeletionStatus.QUEUED.value


@pytest.mark.asyncio
async def test_request_requires_authenticated_owner(job_store):
    with pytest.raises(NotAuthenticatedError):
        await request_account_deletion(job_store, None)


@pytest.mark.asyncio
async def test_invalid_owner_creates_no_job(job_store):
    with pytest.raises(AccountDeletionValidationError):
        await request_account_deletion(job_store, "users/alice")
    assert await job_store.get("users/alice") is None


@pytest.mark.asyncio
async def test_status_without_job(job_store):
    status = await get_account_deletion_status(job_store, "alice")

    assert status.status == DeletionStatus.NOT_REQUESTED.value
    assert status.job_id is None
    assert status.updated_at is None
    assert status.completed_at is None
    assert status.last_error is None
    assert await job_store.get("alice") is None


@pytest.mark.asyncio
async def test_status_serializes_utc_timestamps(job_store, clock):
    await request_account_deletion(job_store, "alice")

    status = await get_account_deletion_status(job_store, "alice")
    payload = status.model_dump(by_alias=True)

    assert payload["status"] == "queued"
    assert payload["jobId"] == "alice"
    assert payload["updatedAt"] == "2026-10-18T12:00:00Z"
    assert payload["completedAt"] is None
    assert payload["lastError"] is None
