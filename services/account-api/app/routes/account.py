"""Routes for account deletion."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ..adapters.identity import IdentityStore
from ..auth.middleware import ensure_session_active, require_auth
from ..schemas.account import (
    AccountDeletionRequestResponse,
    AccountDeletionStatusResponse,
)
from ..services import account_deletion as account_deletion_service
from ..services.deletion_errors import (
    AccountDeletionValidationError,
    NotAuthenticatedError,
    StoreError,
)
from ..services.deletion_jobs import DeletionJobStore
from ..services.deletion_worker import (
    DeletionWorker,
    get_deletion_job_store,
    get_deletion_worker,
    get_identity_store,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/account", tags=["account"])


@router.post(
    "/deletion",
    response_model=AccountDeletionRequestResponse,
    response_model_by_alias=True,
)
async def request_account_deletion(
    request: Request,
    background_tasks: BackgroundTasks,
    job_store: DeletionJobStore = Depends(get_deletion_job_store),
    worker: DeletionWorker = Depends(get_deletion_worker),
    identities: IdentityStore = Depends(get_identity_store),
) -> AccountDeletionRequestResponse:
    """Request permanent deletion of the signed-in account.

    Idempotent: repeated requests return the existing job's status and
    only the first one (or one re-queuing a failed job) starts a worker.
    Accepting a request signs the account out everywhere; the status
    endpoint stays open to the old session so the owner can follow along.
    """
    session = require_auth(request)

    try:
        await ensure_session_active(session, identities)
        response, dispatch = await account_deletion_service.request_account_deletion(
            job_store, session.user_id, identities
        )
    except NotAuthenticatedError as e:
        raise HTTPException(status_code=401, detail=e.message)
    except AccountDeletionValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except StoreError as e:
        logger.error(
            "account_deletion.request_failed",
            extra={"user_id": session.user_id, "error": str(e)},
        )
        raise HTTPException(status_code=503, detail="Account deletion unavailable")

    if dispatch:
        background_tasks.add_task(worker.process, response.job_id)
    return response


@router.get(
    "/deletion",
    response_model=AccountDeletionStatusResponse,
    response_model_by_alias=True,
)
async def get_account_deletion_status(
    request: Request,
    job_store: DeletionJobStore = Depends(get_deletion_job_store),
) -> AccountDeletionStatusResponse:
    """Current status of the signed-in account's deletion job."""
    session = require_auth(request)

    try:
        return await account_deletion_service.get_account_deletion_status(
            job_store, session.user_id
        )
    except NotAuthenticatedError as e:
        raise HTTPException(status_code=401, detail=e.message)
    except AccountDeletionValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except StoreError as e:
        logger.error(
            "account_deletion.status_failed",
            extra={"user_id": session.user_id, "error": str(e)},
        )
        raise HTTPException(status_code=503, detail="Account deletion unavailable")
