"""
main.py - MetricPilot FastAPI application entry point.

Start with: uvicorn metricpilot.main:app --reload --port 8000
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from metricpilot.config import settings
from metricpilot.errors import MetricPilotError, ValidationError

# ---------------------------------------------------------------------------
# Logging - configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan - startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (auto-applied - no manual step needed)
      2. Initialize Redis connection pool (active workflows + action locks)
      3. Shared httpx.AsyncClient + GenerationClient
      4. SessionStore over the async session factory
    Shutdown:
      1. Close the HTTP client, Redis pool and database engine
    """
    # --- 1. Database: run Alembic migrations ---
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)

    # --- 2. Redis: initialize connection pool ---
    from metricpilot.cache import create_redis_pool
    app.state.redis = await create_redis_pool()

    # --- 3. Generation service client - singleton for HTTP connection pool reuse ---
    from metricpilot.orchestration.generation_client import GenerationClient
    app.state.http_client = httpx.AsyncClient(timeout=settings.generation_timeout_s)
    app.state.generation_client = GenerationClient(app.state.http_client)
    logger.info("Generation client initialized url=%s", settings.generation_service_url)

    # --- 4. Session store ---
    from metricpilot.database import AsyncSessionLocal, async_engine
    from metricpilot.store import SessionStore
    app.state.session_store = SessionStore(AsyncSessionLocal)

    logger.info("MetricPilot v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.http_client.aclose()
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")
    await async_engine.dispose()
    logger.info("MetricPilot shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="MetricPilot API",
    version=settings.app_version,
    description=(
        "Guided analytics planning: turns a product description into approved "
        "metrics and an event taxonomy through a human-in-the-loop workflow."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware - restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers - registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """
    Converts FastAPI HTTPException to standard error format with semantic code.
    """
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(MetricPilotError)
async def metricpilot_error_handler(
    request: Request, exc: MetricPilotError
) -> JSONResponse:
    """
    Maps the MetricPilot error taxonomy onto the error envelope.
    ValidationError carries its machine-readable reason in details.
    """
    details: list[dict[str, Any]] = []
    if isinstance(exc, ValidationError):
        details.append({"field": None, "issue": exc.code})
    if exc.http_status >= 500:
        logger.warning(
            "%s on %s %s: %s",
            type(exc).__name__, request.method, request.url.path, exc,
        )
    return _make_error_response(
        code=exc.error_code,
        message=str(exc),
        details=details,
        status_code=exc.http_status,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Workflow router
# ---------------------------------------------------------------------------
from metricpilot.workflow.routes import router as workflow_router  # noqa: E402

app.include_router(workflow_router)
