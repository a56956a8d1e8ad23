"""Per-call timeout and bounded exponential-backoff retry for store operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..observability.metrics import ACCOUNT_DELETION_STORE_RETRIES
from .deletion_errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreRetryPolicy:
    """Runs one store call with its own timeout, retrying transient failures.

    Independent of the job-level attempt counter: when this policy gives up
    the ``TransientStoreError`` propagates to the worker, which decides
    whether the whole job is re-queued or failed.
    """

    def __init__(
        self,
        timeout_seconds: float = 6.0,
        attempts: int = 3,
        initial_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 4.0,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.attempts = max(1, attempts)
        self.initial_backoff_seconds = initial_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> StoreRetryPolicy:
        return cls(
            timeout_seconds=settings.store_operation_timeout_seconds,
            attempts=settings.store_retry_attempts,
            initial_backoff_seconds=settings.store_retry_initial_backoff_seconds,
            max_backoff_seconds=settings.store_retry_max_backoff_seconds,
        )

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` under the policy and return its result."""

        def _before_sleep(retry_state: RetryCallState) -> None:
            ACCOUNT_DELETION_STORE_RETRIES.labels(operation).inc()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "store.operation.retrying",
                extra={
                    "operation": operation,
                    "attempt": retry_state.attempt_number,
                    "error": str(error),
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(
                multiplier=self.initial_backoff_seconds,
                max=self.max_backoff_seconds,
            ),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=_before_sleep,
            reraise=True,
        )

        result: Any = None
        async for attempt in retrying:
            with attempt:
                try:
                    result = await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
                except asyncio.TimeoutError as e:
                    raise TransientStoreError(
                        f"{operation} timed out after {self.timeout_seconds}s",
                        operation,
                    ) from e
        return result

    async def call_blocking(
        self, operation: str, fn: Callable[..., T], *args: Any
    ) -> T:
        """Run a blocking client call (boto3, filesystem) in a worker thread."""
        return await self.call(operation, lambda: asyncio.to_thread(fn, *args))
