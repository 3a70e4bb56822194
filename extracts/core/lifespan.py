"""API lifespan management - startup and shutdown logic."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from extracts import __version__
from extracts.config import Settings, get_settings
from extracts.routers import anomaly_questions, codes
from extracts.services.codes.broker import CodeBroker, create_code_broker

logger = structlog.get_logger(__name__)

# Global clients - accessed by other modules
_db_pool: Optional[asyncpg.Pool] = None
_code_broker: Optional[CodeBroker] = None


def get_db_pool() -> Optional[asyncpg.Pool]:
    """Get the database connection pool."""
    return _db_pool


def get_code_broker() -> Optional[CodeBroker]:
    """Get the code broker."""
    return _code_broker


async def create_db_pool(settings: Settings) -> asyncpg.Pool:
    """Create the asyncpg pool. Raises if the database is unreachable."""
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=10,
        command_timeout=30,
    )
    logger.info(
        "database_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


async def _init_database(settings: Settings) -> Optional[asyncpg.Pool]:
    """The API starts in degraded mode if the database is not reachable."""
    if not settings.database_url:
        logger.warning("database_not_configured", hint="Set DATABASE_URL in .env")
        return None
    try:
        pool = await create_db_pool(settings)
    except (OSError, asyncpg.PostgresError) as e:
        logger.error("database_pool_failed", error=str(e))
        return None
    anomaly_questions.set_db_pool(pool)
    return pool


def _init_code_broker(settings: Settings) -> Optional[CodeBroker]:
    try:
        broker = create_code_broker(settings)
    except ValueError as e:
        logger.error("code_broker_not_configured", error=str(e))
        return None
    codes.set_code_broker(broker)
    return broker


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global _db_pool, _code_broker

    settings = get_settings()
    logger.info(
        "api_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        code_broker_mode=settings.code_broker_mode,
    )

    _db_pool = await _init_database(settings)
    _code_broker = _init_code_broker(settings)

    yield

    logger.info("api_shutting_down")

    if _code_broker is not None:
        await _code_broker.close()
        codes.set_code_broker(None)
        _code_broker = None
        logger.info("code_broker_closed")

    if _db_pool is not None:
        await _db_pool.close()
        anomaly_questions.set_db_pool(None)
        _db_pool = None
        logger.info("database_pool_closed")
