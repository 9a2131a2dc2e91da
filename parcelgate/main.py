"""ParcelGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app()  testable application factory
  - lifespan      @asynccontextmanager startup/shutdown sequence
  - app           module-level instance for uvicorn

Startup sequence:
  1. load_config()                 → app.state.config
  2. KeyStore.initialize()         → app.state.key_store
  3. SQLiteUserDirectory           → app.state.user_directory
  4. UsageMeter.start()            → app.state.usage_meter
  5. CredentialResolver            → app.state.resolver
  6. app.state.ready = True

Shutdown (reverse): ready = False → drain + stop meter → close users → close store

Callers embedding ParcelGate in a larger app, and tests, may pre-populate any
of key_store / user_directory / usage_meter / resolver on ``app.state``
before startup; the lifespan then uses them and leaves closing them to the
caller.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from parcelgate.auth.metering import UsageMeter
from parcelgate.auth.resolver import CredentialResolver
from parcelgate.auth.router import router as api_keys_router
from parcelgate.auth.store import KeyStore
from parcelgate.auth.users import SQLiteUserDirectory, UserDirectory
from parcelgate.config import Config, load_config
from parcelgate.constants import REQUEST_ID_HEADER
from parcelgate.health import router as health_router
from parcelgate.utils.logger import (
    clear_request_id,
    configure_logging,
    get_logger,
    set_request_id,
)
from parcelgate.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("ParcelGate starting up...")

    # ── Step 1: Configuration ────────────────────────────────────────────────
    # load_config() raises SystemExit on parse errors, before ready is set.
    config: Optional[Config] = getattr(app.state, "config", None)
    if config is None:
        config = load_config()
        app.state.config = config

    # ── Step 2: Key store ────────────────────────────────────────────────────
    owned_store = getattr(app.state, "key_store", None) is None
    if owned_store:
        app.state.key_store = KeyStore(config.keys.db_path)
    key_store: KeyStore = app.state.key_store
    await key_store.initialize()

    # ── Step 3: User directory ───────────────────────────────────────────────
    owned_users = getattr(app.state, "user_directory", None) is None
    if owned_users:
        directory = SQLiteUserDirectory(config.users.db_path)
        await directory.initialize()
        app.state.user_directory = directory
    users: UserDirectory = app.state.user_directory

    # ── Step 4: Usage meter ──────────────────────────────────────────────────
    owned_meter = getattr(app.state, "usage_meter", None) is None
    if owned_meter:
        app.state.usage_meter = UsageMeter(key_store)
    meter: UsageMeter = app.state.usage_meter
    meter.start()

    # ── Step 5: Resolver ─────────────────────────────────────────────────────
    if getattr(app.state, "resolver", None) is None:
        app.state.resolver = CredentialResolver.from_config(config, key_store, users, meter)

    # ── Step 6: Ready ────────────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "ParcelGate ready",
        keys_db_path=key_store.db_path,
        api_key_headers=list(app.state.resolver.api_key_headers),
    )

    yield

    # ── Shutdown (reverse order) ─────────────────────────────────────────────
    logger.info("ParcelGate shutting down...")
    app.state.ready = False

    if owned_meter:
        await meter.close()
    if owned_users:
        await users.close()
    if owned_store:
        await key_store.close()

    logger.info("ParcelGate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the ParcelGate FastAPI application.

    Call this directly in tests to get an isolated app instance:
        app = create_app()
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="ParcelGate",
        description="Authentication and API key lifecycle for the warehouse backend",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )
    application.state.ready = False

    application.include_router(health_router)
    application.include_router(api_keys_router, prefix="/api/admin/api-keys")

    # Every log line emitted while serving a request carries its request id.
    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_ulid()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
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
            headers=exc.headers,
        )

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
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
