"""
Lecture Notes Backend — Health Check Route
============================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Checks the database (SELECT 1) and the Gemini circuit breaker, and
       reports how many pipeline tasks this process is running.

Status levels:
    - healthy:   All dependencies operational (HTTP 200)
    - degraded:  Gemini unavailable or circuit open; submissions still
                 accepted, jobs will wait in retries (HTTP 200)
    - unhealthy: Database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from lecturenotes import __version__
from lecturenotes.database import engine
from lecturenotes.schemas.job import HealthResponse
from lecturenotes.services.gemini_service import CircuitBreaker, gemini_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(request: Request):
    db_status = "connected"
    gemini_status = "available"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── Check Gemini API ──────────────────────────────────────────────────
    # Circuit state only; no Gemini round trip per probe
    if gemini_service.circuit_breaker.state == CircuitBreaker.OPEN:
        gemini_status = "circuit_open"
        overall = "degraded" if overall != "unhealthy" else overall

    runner = getattr(request.app.state, "job_runner", None)
    body = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        gemini=gemini_status,
        active_jobs=runner.active_jobs if runner is not None else 0,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    return JSONResponse(
        status_code=503 if overall == "unhealthy" else 200,
        content=body.model_dump(),
    )
