#!/usr/bin/env python
"""Run the account deletion worker outside the API process.

Usage:
    cd services/account-api
    uv run python scripts/run_deletion_worker.py

Options:
    --once          Process every claimable job once and exit
    --owner ID      Process a single account's job and exit
    --poll SECONDS  Sweep interval (default: DELETION_WORKER_POLL_SECONDS)
"""

import argparse
import asyncio
import logging
import sys

sys.path.insert(0, ".")

from app.config import get_settings
from app.logging import configure_logging
from app.observability.tracing import configure_tracing
from app.services.deletion_worker import get_deletion_worker

logger = logging.getLogger(__name__)


async def drain(worker) -> None:
    """Wait for requeued passes, including ones they requeue in turn."""
    while worker.background_tasks:
        await asyncio.gather(*list(worker.background_tasks), return_exceptions=True)


async def run(once: bool, owner_id: str | None, poll_seconds: float | None) -> None:
    settings = get_settings()

    if not settings.db_url:
        logger.error("DB_URL not configured")
        sys.exit(1)

    worker = get_deletion_worker()

    if owner_id:
        status = await worker.process(owner_id)
        await drain(worker)
        logger.info(
            "account_deletion.worker.single_pass",
            extra={"owner_id": owner_id, "status": status.value if status else None},
        )
        return

    if once:
        processed = await worker.run_pending()
        await drain(worker)
        logger.info("account_deletion.worker.sweep_done", extra={"processed": processed})
        return

    try:
        await worker.run_forever(poll_seconds or settings.deletion_worker_poll_seconds)
    finally:
        await worker.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the account deletion worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every claimable job once and exit",
    )
    parser.add_argument(
        "--owner",
        type=str,
        default=None,
        help="Process a single account's job and exit",
    )
    parser.add_argument(
        "--poll",
        type=float,
        default=None,
        help="Sweep interval in seconds",
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level)
    configure_tracing("account-deletion-worker", settings.otel_exporter_otlp_endpoint)

    try:
        asyncio.run(run(once=args.once, owner_id=args.owner, poll_seconds=args.poll))
    except KeyboardInterrupt:
        logger.info("account_deletion.worker.stopped")


if __name__ == "__main__":
    main()
