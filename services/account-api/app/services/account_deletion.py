"""Account deletion request intake and status queries."""

import logging

from ..adapters.identity import IdentityStore
from ..models.deletion_job import DeletionStatus
from ..observability.metrics import ACCOUNT_DELETION_REQUESTS
from ..schemas.account import (
    AccountDeletionRequestResponse,
    AccountDeletionStatusResponse,
)
from .deletion_errors import (
    AccountDeletionValidationError,
    NotAuthenticatedError,
    StoreError,
)
from .deletion_jobs import DeletionJobStore, as_utc

logger = logging.getLogger(__name__)

MAX_OWNER_ID_LENGTH = 128


def validate_owner_id(owner_id: object) -> str:
    """Return ``owner_id`` if it can address documents and blob prefixes.

    Raises:
        AccountDeletionValidationError: If it is empty, too long or contains
            a path separator.
    """
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise AccountDeletionValidationError("Account id is required")
    if owner_id != owner_id.strip():
        raise AccountDeletionValidationError("Account id has surrounding whitespace")
    if len(owner_id) > MAX_OWNER_ID_LENGTH:
        raise AccountDeletionValidationError(
            f"Account id exceeds {MAX_OWNER_ID_LENGTH} characters"
        )
    if "/" in owner_id or owner_id in (".", ".."):
        raise AccountDeletionValidationError("Account id is not path-safe")
    return owner_id


async def request_account_deletion(
    job_store: DeletionJobStore,
    owner_id: str | None,
    identities: IdentityStore | None = None,
) -> tuple[AccountDeletionRequestResponse, bool]:
    """Record a deletion request for ``owner_id``.

    Returns the response and whether the caller must dispatch a worker;
    only the request that created the job (or re-queued a failed one)
    gets True, so concurrent duplicates never start a second pass.

    Sessions issued to the account so far are revoked once the job is
    recorded. Revocation is best effort: a failure is logged and the
    request still succeeds.

    Raises:
        NotAuthenticatedError: If there is no verified caller.
        AccountDeletionValidationError: If the account id is malformed.
        TransientStoreError: If the job store is unavailable.
    """
    if owner_id is None:
        raise NotAuthenticatedError("Not authenticated")
    owner_id = validate_owner_id(owner_id)

    result = await job_store.enqueue(owner_id)
    status = result.job.status
    ACCOUNT_DELETION_REQUESTS.labels(status).inc()
    logger.info(
        "account_deletion.requested",
        extra={"owner_id": owner_id, "status": status, "dispatch": result.dispatch},
    )
    if identities is not None:
        await _revoke_sessions(identities, owner_id)

    response = AccountDeletionRequestResponse(
        accepted=True,
        status=status,
        job_id=result.job.job_id,
    )
    return response, result.dispatch


async def get_account_deletion_status(
    job_store: DeletionJobStore,
    owner_id: str | None,
) -> AccountDeletionStatusResponse:
    """Snapshot of the deletion job for ``owner_id``; never writes."""
    if owner_id is None:
        raise NotAuthenticatedError("Not authenticated")
    owner_id = validate_owner_id(owner_id)

    job = await job_store.get(owner_id)
    if job is None:
        return AccountDeletionStatusResponse(status=DeletionStatus.NOT_REQUESTED.value)

    return AccountDeletionStatusResponse(
        status=job.status,
        job_id=job.job_id,
        updated_at=as_utc(job.updated_at),
        completed_at=as_utc(job.completed_at),
        last_error=job.last_error,
    )


async def _revoke_sessions(identities: IdentityStore, owner_id: str) -> None:
    try:
        await identities.revoke_sessions(owner_id)
    except StoreError as e:
        logger.warning(
            "account_deletion.revoke_sessions_failed",
            extra={"owner_id": owner_id, "error": str(e)},
        )
