"""Health check endpoint."""

import asyncio

import structlog
from fastapi import APIRouter

from extracts import __version__
from extracts.core.lifespan import get_code_broker, get_db_pool
from extracts.schemas import HealthResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


async def check_database() -> str:
    pool = get_db_pool()
    if pool is None:
        return "unavailable"
    try:
        async with pool.acquire() as conn:
            await asyncio.wait_for(conn.fetchval("SELECT 1"), timeout=5.0)
        return "ok"
    except Exception as e:
        logger.warning("health_database_error", error=str(e))
        return "error"


async def check_code_broker() -> str:
    broker = get_code_broker()
    if broker is None:
        return "unavailable"
    return "ok" if await broker.ping() else "error"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Status of the database and the code broker."""
    database, code_broker = await asyncio.gather(check_database(), check_code_broker())
    broker = get_code_broker()
    overall = "ok" if database == "ok" and code_broker == "ok" else "degraded"
    return HealthResponse(
        status=overall,
        version=__version__,
        database=database,
        code_broker=code_broker,
        pending_code_requests=broker.pending_count() if broker is not None else 0,
    )
