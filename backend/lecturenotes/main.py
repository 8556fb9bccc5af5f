"""
Lecture Notes Backend — FastAPI Application Factory
=====================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes configuration, middleware, routes, exception handlers and
       the background job runner's lifecycle in one place.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn (uvicorn lecturenotes.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │                        FastAPI App                           │
    │                                                              │
    │  Middleware:  [Request ID] → [Logging] → [GZip] → [CORS]     │
    │                                                              │
    │  Routes:                                                     │
    │   POST /api/jobs   GET /api/jobs/{id}   POST .../cancel      │
    │   GET /api/accounts/{id}/usage   POST /api/webhooks/...      │
    │   GET /health                                                │
    │                                                              │
    │  Background:  JobRunner ──▶ JobPipeline ──▶ Gemini/Gotenberg │
    └──────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging, validate configuration
    2. Create the storage directory
    3. Clear elapsed pending downgrades
    4. Start the JobRunner and resume unfinished jobs

    Shutdown:
    1. Drain running jobs (interrupted ones resume on next start)
    2. Dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from lecturenotes import __version__
from lecturenotes.config import settings
from lecturenotes.database import async_session_factory, dispose_engine
from lecturenotes.exceptions import (
    CircuitBreakerOpenError,
    ConflictError,
    DatabaseError,
    FileStorageError,
    LectureNotesError,
    NotFoundError,
    QuotaError,
    ValidationError,
    WebhookAuthError,
)
from lecturenotes.middleware.logging import RequestLoggingMiddleware
from lecturenotes.middleware.request_id import RequestIDMiddleware, request_id_var
from lecturenotes.routes import accounts, health, jobs, webhooks
from lecturenotes.services.gemini_service import gemini_service
from lecturenotes.services.job_runner import JobRunner
from lecturenotes.services.pipeline import JobPipeline
from lecturenotes.services.rendering_service import rendering_service
from lecturenotes.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Pipeline log lines name the job id; request log lines the request id.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_pipeline() -> JobPipeline:
    """Wire the production collaborators: Gemini for text, Gotenberg for PDF."""
    return JobPipeline(
        transcriber=gemini_service,
        extractor=gemini_service,
        synthesizer=gemini_service,
        renderer=rendering_service,
    )


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Lecture Notes Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: health checks and status reads still work, and
        # jobs fail with auth_failed until the key is fixed.
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    storage = Path(settings.storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Storage directory: %s", storage.resolve())

    async with async_session_factory() as db:
        async with db.begin():
            await subscription_service.expire_pending_downgrades(db)

    runner = JobRunner(build_pipeline())
    app.state.job_runner = runner
    await runner.resume_pending()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Lecture Notes Backend shutting down...")
    await runner.shutdown()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(status_code: int, error: str, message: str, details=None, headers=None):
    content = {
        "error": error,
        "message": message,
        "details": details,
        "request_id": request_id_var.get(""),
    }
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP status codes and the uniform error body
    {error, message, details, request_id}.

    Handler hierarchy:
        ValidationError, RequestValidationError → 400
        WebhookAuthError                        → 401
        QuotaError family                       → 402 (error = limit code)
        NotFoundError                           → 404
        ConflictError                           → 409
        FileStorageError, DatabaseError         → 500
        CircuitBreakerOpenError                 → 503
        LectureNotesError, Exception            → 500

    Internal details (paths, SQL, stack traces) are logged, never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
            for e in exc.errors()
        ]
        return _error_response(
            400, "validation_error", "Request body or parameters are invalid", {"errors": errors}
        )

    @app.exception_handler(WebhookAuthError)
    async def handle_webhook_auth(request: Request, exc: WebhookAuthError):
        return _error_response(401, "unauthorized", exc.message)

    @app.exception_handler(QuotaError)
    async def handle_quota_error(request: Request, exc: QuotaError):
        """Quota rejections carry the figures the client needs for upgrade prompts."""
        logger.info("[%s] Quota rejection (%s): %s", request_id_var.get(""), exc.code, exc.message)
        return _error_response(402, exc.code, exc.message, exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        return _error_response(409, "conflict", exc.message, exc.context)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(FileStorageError)
    async def handle_file_storage_error(request: Request, exc: FileStorageError):
        logger.error("[%s] File storage error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(LectureNotesError)
    async def handle_app_error(request: Request, exc: LectureNotesError):
        logger.error("[%s] Unhandled application error: %s", request_id_var.get(""), exc.message)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Lecture Notes API",
        description=(
            "Turns recorded lectures and course documents into Cornell-style study "
            "notes. Submissions are metered against the account's subscription tier."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(jobs.router)
    app.include_router(accounts.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)

    return app


app = create_app()
