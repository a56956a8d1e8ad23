"""Account deletion worker: claims a job, runs the plan, records the outcome."""

import asyncio
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from functools import lru_cache

from opentelemetry import trace

from ..adapters.document_store import MAX_BATCH_WRITES, DocumentStore, SqlDocumentStore
from ..adapters.identity import IdentityStore, SqlIdentityStore
from ..adapters.storage import StorageAdapter, get_storage_adapter
from ..config import Settings, get_settings
from ..database import get_async_session_factory
from ..models.deletion_job import DeletionStatus
from ..observability.metrics import (
    ACCOUNT_DELETION_JOBS,
    ACCOUNT_DELETION_PHASE_DURATION,
)
from .deletion_claims import ClaimManager
from .deletion_errors import (
    AccountDeletionError,
    LeaseLostError,
    TransientStoreError,
)
from .deletion_graph import GraphPlanner
from .deletion_jobs import DeletionJobStore
from .deletion_resources import (
    DIRECT_CONVERSATION_POLICIES,
    DeletionContext,
    execute_step,
)
from .store_retry import StoreRetryPolicy

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("account-api.account-deletion")

Dispatcher = Callable[[str], None]

# last_error is shown to the account owner; keep it short
MAX_ERROR_LENGTH = 500


def make_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _error_message(error: BaseException) -> str:
    message = f"{type(error).__name__}: {error}"
    return message[:MAX_ERROR_LENGTH]


class DeletionWorker:
    """Executes account deletion jobs.

    ``process`` is safe to call from any number of processes at once: the
    lease in ``deletion_jobs`` admits a single pass per account, and every
    step of the plan is idempotent, so a job interrupted at any point is
    finished by the next pass.
    """

    def __init__(
        self,
        job_store: DeletionJobStore,
        documents: DocumentStore,
        storage: StorageAdapter,
        identities: IdentityStore,
        planner: GraphPlanner | None = None,
        retry: StoreRetryPolicy | None = None,
        max_attempts: int = 5,
        lease_seconds: float = 90.0,
        page_size: int = 200,
        batch_size: int = 400,
        direct_conversation_policy: str = "delete",
        worker_id: str | None = None,
    ):
        if direct_conversation_policy not in DIRECT_CONVERSATION_POLICIES:
            raise ValueError(
                f"Unknown direct conversation policy: {direct_conversation_policy}"
            )
        if batch_size > MAX_BATCH_WRITES:
            raise ValueError(
                f"Write batch size {batch_size} exceeds the document store limit"
            )
        self.job_store = job_store
        self.claims = ClaimManager(job_store, lease_seconds=lease_seconds)
        self.documents = documents
        self.storage = storage
        self.identities = identities
        self.planner = planner or GraphPlanner()
        self.retry = retry or StoreRetryPolicy()
        self.max_attempts = max_attempts
        self.page_size = page_size
        self.batch_size = batch_size
        self.direct_conversation_policy = direct_conversation_policy
        self.worker_id = worker_id or make_worker_id()
        # Re-runs requeued jobs; replaced by callers that schedule elsewhere
        self.dispatcher: Dispatcher | None = self.dispatch_in_background
        self.background_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        job_store: DeletionJobStore,
        documents: DocumentStore,
        storage: StorageAdapter,
        identities: IdentityStore,
    ) -> "DeletionWorker":
        return cls(
            job_store=job_store,
            documents=documents,
            storage=storage,
            identities=identities,
            retry=StoreRetryPolicy.from_settings(settings),
            max_attempts=settings.deletion_max_attempts,
            lease_seconds=settings.deletion_lease_seconds,
            page_size=settings.deletion_query_page_size,
            batch_size=settings.deletion_write_batch_size,
            direct_conversation_policy=settings.direct_conversation_policy,
        )

    async def process(self, owner_id: str) -> DeletionStatus | None:
        """Run one pass for ``owner_id``.

        Returns the status the job was released into, or None when the
        lease could not be claimed or was lost midway.
        """
        lease = await self.claims.claim(owner_id, self.worker_id)
        if lease is None:
            ACCOUNT_DELETION_JOBS.labels("not_claimed").inc()
            return None

        job = await self.job_store.get(owner_id)
        attempt = job.attempt if job else 1

        with tracer.start_as_current_span("account_deletion.process") as span:
            span.set_attribute("owner_id", owner_id)
            span.set_attribute("attempt", attempt)
            span.set_attribute("worker_id", self.worker_id)
            logger.info(
                "account_deletion.job.started",
                extra={
                    "owner_id": owner_id,
                    "worker_id": self.worker_id,
                    "attempt": attempt,
                },
            )

            ctx = DeletionContext(
                owner_id=owner_id,
                documents=self.documents,
                storage=self.storage,
                identities=self.identities,
                retry=self.retry,
                page_size=self.page_size,
                batch_size=self.batch_size,
                direct_conversation_policy=self.direct_conversation_policy,
                checkpoint=lambda: self._extend(owner_id, lease),
            )
            if attempt > self.max_attempts:
                # Previous holders crashed without releasing the lease
                exhausted = AccountDeletionError(
                    f"Attempts exhausted after {attempt - 1} interrupted passes"
                )
                return await self._fail(owner_id, lease, attempt, ctx, exhausted, span)

            try:
                await self._run_plan(ctx, lease, attempt)
            except LeaseLostError:
                # The job belongs to whoever reclaimed it; leave the record alone
                span.set_attribute("outcome", "lease_lost")
                ACCOUNT_DELETION_JOBS.labels("lease_lost").inc()
                logger.warning(
                    "account_deletion.job.lease_lost",
                    extra={"owner_id": owner_id, "worker_id": self.worker_id},
                )
                return None
            except TransientStoreError as e:
                return await self._handle_transient(
                    owner_id, lease, attempt, ctx, e, span
                )
            except AccountDeletionError as e:
                return await self._fail(owner_id, lease, attempt, ctx, e, span)
            except Exception as e:
                logger.exception(
                    "account_deletion.job.unexpected_error",
                    extra={"owner_id": owner_id, "worker_id": self.worker_id},
                )
                return await self._fail(owner_id, lease, attempt, ctx, e, span)

            released = await self.claims.release(
                owner_id,
                lease,
                DeletionStatus.COMPLETED,
                deleted_counts=dict(ctx.counts),
            )
            if not released:
                ACCOUNT_DELETION_JOBS.labels("lease_lost").inc()
                return None
            span.set_attribute("outcome", "completed")
            ACCOUNT_DELETION_JOBS.labels("completed").inc()
            logger.info(
                "account_deletion.job.completed",
                extra={
                    "owner_id": owner_id,
                    "worker_id": self.worker_id,
                    "attempt": attempt,
                    "deleted_counts": dict(ctx.counts),
                },
            )
            return DeletionStatus.COMPLETED

    async def _run_plan(self, ctx: DeletionContext, lease: str, attempt: int) -> None:
        for planned in self.planner.plan(ctx.owner_id):
            phase_name = planned.phase.name.lower()
            started = time.perf_counter()
            with tracer.start_as_current_span("account_deletion.phase") as span:
                span.set_attribute("owner_id", ctx.owner_id)
                span.set_attribute("phase", phase_name)
                span.set_attribute("attempt", attempt)
                for step in planned.steps:
                    logger.debug(
                        "account_deletion.step.started",
                        extra={
                            "owner_id": ctx.owner_id,
                            "phase": phase_name,
                            "resource_type": step.resource_type,
                            "locator": step.locator,
                        },
                    )
                    await execute_step(ctx, step)
            ACCOUNT_DELETION_PHASE_DURATION.labels(phase_name).observe(
                time.perf_counter() - started
            )
            await self._extend(
                ctx.owner_id, lease, last_completed_phase=planned.phase.value
            )
            logger.info(
                "account_deletion.phase.completed",
                extra={
                    "owner_id": ctx.owner_id,
                    "phase": phase_name,
                    "attempt": attempt,
                },
            )

    async def _extend(
        self, owner_id: str, lease: str, last_completed_phase: int | None = None
    ) -> None:
        extended = await self.retry.call(
            "deletion_jobs.extend",
            lambda: self.claims.extend(
                owner_id,
                lease,
                last_completed_phase=last_completed_phase,
            ),
        )
        if not extended:
            raise LeaseLostError(f"Lease on {owner_id} lost by {self.worker_id}")

    async def _handle_transient(self, owner_id, lease, attempt, ctx, error, span):
        if attempt >= self.max_attempts:
            return await self._fail(owner_id, lease, attempt, ctx, error, span)

        released = await self.claims.release(
            owner_id,
            lease,
            DeletionStatus.QUEUED,
            last_error=_error_message(error),
            deleted_counts=dict(ctx.counts),
        )
        span.set_attribute("outcome", "requeued")
        ACCOUNT_DELETION_JOBS.labels("requeued").inc()
        logger.warning(
            "account_deletion.job.requeued",
            extra={
                "owner_id": owner_id,
                "worker_id": self.worker_id,
                "attempt": attempt,
                "error": str(error),
            },
        )
        if not released:
            return None
        if self.dispatcher is not None:
            self.dispatcher(owner_id)
        return DeletionStatus.QUEUED

    async def _fail(self, owner_id, lease, attempt, ctx, error, span):
        released = await self.claims.release(
            owner_id,
            lease,
            DeletionStatus.FAILED,
            last_error=_error_message(error),
            deleted_counts=dict(ctx.counts),
        )
        span.set_attribute("outcome", "failed")
        span.record_exception(error)
        ACCOUNT_DELETION_JOBS.labels("failed").inc()
        logger.error(
            "account_deletion.job.failed",
            extra={
                "owner_id": owner_id,
                "worker_id": self.worker_id,
                "attempt": attempt,
                "error": str(error),
            },
        )
        return DeletionStatus.FAILED if released else None

    def dispatch_in_background(self, owner_id: str) -> None:
        """Schedule a pass for ``owner_id`` on the running event loop."""
        task = asyncio.create_task(self.process(owner_id))
        self.background_tasks.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "account_deletion.dispatch_failed",
                exc_info=error,
                extra={"worker_id": self.worker_id},
            )

    async def shutdown(self) -> None:
        """Cancel dispatched passes; their leases expire and get swept later."""
        tasks = list(self.background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run_pending(self, limit: int = 50) -> int:
        """Process every claimable job once. Returns the number attempted."""
        owner_ids = await self.job_store.claimable(limit=limit)
        for owner_id in owner_ids:
            await self.process(owner_id)
        return len(owner_ids)

    async def run_forever(self, poll_seconds: float = 15.0) -> None:
        """Sweep for queued and abandoned jobs until cancelled."""
        logger.info(
            "account_deletion.worker.started",
            extra={"worker_id": self.worker_id, "poll_seconds": poll_seconds},
        )
        while True:
            try:
                processed = await self.run_pending()
            except TransientStoreError as e:
                logger.warning(
                    "account_deletion.worker.sweep_failed",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                )
                processed = 0
            except Exception:
                logger.exception(
                    "account_deletion.worker.sweep_failed",
                    extra={"worker_id": self.worker_id},
                )
                processed = 0
            if not processed:
                await asyncio.sleep(poll_seconds)


@lru_cache
def get_deletion_job_store() -> DeletionJobStore:
    return DeletionJobStore(get_async_session_factory())


@lru_cache
def get_identity_store() -> IdentityStore:
    return SqlIdentityStore(get_async_session_factory())


@lru_cache
def get_deletion_worker() -> DeletionWorker:
    session_factory = get_async_session_factory()
    return DeletionWorker.from_settings(
        get_settings(),
        job_store=get_deletion_job_store(),
        documents=SqlDocumentStore(session_factory),
        storage=get_storage_adapter(),
        identities=get_identity_store(),
    )
