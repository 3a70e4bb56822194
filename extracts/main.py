"""Registry extracts API - code delivery and answer-store endpoints."""

import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from extracts import __version__
from extracts.config import get_settings
from extracts.core.lifespan import lifespan
from extracts.core.logging import configure_logging
from extracts.core.sentry import init_sentry
from extracts.routers import anomaly_questions, codes, health, metrics

settings = get_settings()
configure_logging(settings.log_level)
init_sentry(settings, component="api")

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Registry Extracts",
    description="Code delivery and answer store for registry extract ordering",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    """Add request ID and timing to all requests."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("request_failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-API-Version"] = __version__
    if request.url.path not in ("/health", "/metrics"):
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
    return response


app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(codes.router)
app.include_router(anomaly_questions.router)


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "extracts.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )
