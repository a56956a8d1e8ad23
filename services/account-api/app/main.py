import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    generate_latest,
)

from .auth.middleware import SessionMiddleware
from .config import get_settings
from .health import router as health_router
from .logging import configure_logging
from .observability.tracing import configure_tracing
from .routes.account import router as account_router
from .services.deletion_worker import get_deletion_worker

logger = logging.getLogger(__name__)

REQUESTS = Counter(
    "account_api_http_requests_total",
    "HTTP requests",
    ["method", "path", "status"],
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings.log_level)
    configure_tracing("account-api", settings.otel_exporter_otlp_endpoint)
    logger.info("account-api.start", extra={"env": settings.env})

    # Requeued jobs are re-run by the worker itself; the sweeper only adds
    # recovery of passes abandoned by crashed processes
    worker = get_deletion_worker() if settings.db_url else None
    sweeper: asyncio.Task[None] | None = None
    if worker is not None and settings.deletion_worker_enabled:
        sweeper = asyncio.create_task(
            worker.run_forever(settings.deletion_worker_poll_seconds)
        )

    yield

    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    if worker is not None:
        await worker.shutdown()
    logger.info("account-api.stop")


app = FastAPI(lifespan=lifespan, title="Account API", version="0.1.0")

settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.add_middleware(SessionMiddleware)


@app.middleware("http")
async def metrics_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    response: Response = await call_next(request)
    try:
        REQUESTS.labels(
            request.method, request.url.path, str(response.status_code)
        ).inc()
    except Exception:
        logger.warning("Failed to update metrics", exc_info=True)
    return response


@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(health_router)
app.include_router(account_router)
