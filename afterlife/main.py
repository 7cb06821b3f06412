"""
FastAPI application with Redis lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger, setup_logging
from afterlife.routes import health, inbound, tokens, workflows
from afterlife.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    if not settings.SECRET or not settings.OWNER_EMAIL:
        logger.warning(
            "Vault not fully configured",
            has_secret=bool(settings.SECRET),
            has_owner=bool(settings.OWNER_EMAIL),
        )

    logger.info("Initializing Redis connection")
    await fast_redis.initialize()

    yield

    logger.info("Application shutting down")
    try:
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))


app = FastAPI(
    title="Afterlife Vault",
    description="Dead man's switch: releases a secret after an unchallenged countdown",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(inbound.router)
app.include_router(tokens.router)
app.include_router(workflows.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
