import logging

from fastapi import APIRouter, Response
from sqlalchemy import text

from .database import get_async_engine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz")
def healthz() -> dict[str, bool]:
    return {"ok": True}


@router.get("/readyz")
async def readyz(response: Response) -> dict[str, bool]:
    try:
        async with get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("readyz.database_unavailable", extra={"error": str(e)})
        response.status_code = 503
        return {"ready": False}
    return {"ready": True}
