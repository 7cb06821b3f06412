"""
Health check endpoints.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from afterlife.infrastructure.observability.logging import SERVICE_NAME
from afterlife.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/readyz")
async def readyz():
    """Readiness check: the durable workflow store must answer."""
    checks = {}

    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": round((time.time() - t0) * 1000, 1)}
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    overall_ok = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"status": "ready" if overall_ok else "degraded", "checks": checks},
    )
