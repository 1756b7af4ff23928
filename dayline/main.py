"""Dayline FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() - testable application factory
  - lifespan - @asynccontextmanager startup/shutdown sequence
  - /health router - delegated to dayline/health.py
  - /        route  - service discovery root
  - app = create_app() - module-level instance for uvicorn

Startup sequence:
  1. load_config()          → app.state.config
  2. create_store()         → app.state.store
  3. SignatureVerifier      → app.state.verifier
     RateLimiter            → app.state.rate_limiter
  4. Counter pruner task    → daily 03:00 UTC cleanup of expired windows
  5. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel pruner → close store

Uvicorn hardened defaults (see dayline/run.py):
  uvicorn dayline.main:app \\
    --host 127.0.0.1 \\
    --port 8080 \\
    --limit-concurrency 100 \\
    --backlog 50 \\
    --timeout-keep-alive 5
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from starlette.exceptions import HTTPException as StarletteHTTPException

from dayline.auth.errors import DaylineError, RateLimitExceededError
from dayline.auth.limiter import RateLimiter
from dayline.auth.signing import SignatureVerifier
from dayline.config import Config, load_config
from dayline.health import router as health_router
from dayline.middleware import BodySizeLimitMiddleware, RequestIdMiddleware
from dayline.routers.users import router as users_router
from dayline.store.factory import create_store
from dayline.store.protocol import Store
from dayline.store.pruner import run_counter_pruner
from dayline.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

_INTERNAL_ERROR_BODY = {"error": "Internal server error"}


# ─── Root Endpoint ────────────────────────────────────────────────────────────

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint - service identity / discovery."""
    return {
        "service": "Dayline",
        "health": "/health",
        "api": "/api",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown sequence."""
    logger.info("Dayline starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on parse error or missing version field,
    # so the process exits non-zero before ready=True is ever set.
    config: Config = load_config()
    app.state.config = config
    logger.info(
        "Config loaded",
        config_path=config.path,
        signature_window_ms=config.auth.signature_window_ms,
    )

    # ── Step 2: Initialize store ──────────────────────────────────────────────
    # RuntimeError from the schema guard propagates and refuses startup.
    store: Store = await create_store(config)
    app.state.store = store

    # ── Step 3: Verifier + limiter ────────────────────────────────────────────
    app.state.verifier = SignatureVerifier(
        store, window_ms=config.auth.signature_window_ms
    )
    app.state.rate_limiter = RateLimiter(store)

    # ── Step 4: Counter pruner ────────────────────────────────────────────────
    pruner_task: asyncio.Task[None] = asyncio.create_task(
        run_counter_pruner(store, retention_days=config.store.counter_retention_days)
    )

    # ── Step 5: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("Dayline ready", store_backend=getattr(store, "backend_name", None))

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("Dayline shutting down...")
    app.state.ready = False

    if not pruner_task.done():
        pruner_task.cancel()
        try:
            await pruner_task
        except asyncio.CancelledError:
            pass

    await store.close()
    logger.info("Dayline shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the Dayline FastAPI application.

    Call this directly in tests to get an isolated app instance, then set
    ``app.state`` collaborators by hand (ASGITransport does not run lifespan):

        app = create_app()
        app.state.store = store
        app.state.verifier = SignatureVerifier(store)
        ...

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Dayline API",
        description="Companion backend for the Dayline screen-capture app",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health returns 503 for any request that arrives before startup completes.
    application.state.ready = False

    # In Starlette the LAST-added middleware is OUTERMOST (runs first), so
    # oversized-body rejections still carry a request id.
    application.add_middleware(BodySizeLimitMiddleware)
    application.add_middleware(RequestIdMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(users_router)

    # Global exception handlers
    @application.exception_handler(DaylineError)
    async def dayline_error_handler(request: Request, exc: DaylineError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}

        if not exc.expose_message:
            logger.error(
                "Request failed",
                kind=exc.kind.value,
                error=exc.message,
                path=str(request.url.path),
            )
            return JSONResponse(status_code=exc.status_code, content=_INTERNAL_ERROR_BODY)

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message},
            headers=headers,
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("Request validation failed", path=str(request.url.path))
        return JSONResponse(status_code=400, content={"error": "Invalid request"})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content=_INTERNAL_ERROR_BODY)

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
