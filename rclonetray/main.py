"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rclonetray.api.bookmarks import router as bookmarks_router
from rclonetray.api.daemon import router as daemon_router
from rclonetray.api.health import router as health_router
from rclonetray.api.mounts import router as mounts_router
from rclonetray.api.syncs import router as syncs_router
from rclonetray.config import Settings
from rclonetray.exceptions import (
    DaemonError,
    DaemonStartupError,
    InternalServerError,
    NotFoundError,
    RpcError,
    RpcTimeoutError,
    RpcUnavailableError,
    StateError,
)
from rclonetray.services.manager import RcloneManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting rclonetray (debug=%s)", settings.debug)

    manager = RcloneManager(settings)
    app.state.manager = manager
    try:
        await manager.init()
    except Exception as exc:
        logger.critical("Failed to initialize rclone: %s. Is rclone installed?", exc)
        await manager.shutdown()
        raise

    restore_task = asyncio.create_task(manager.restore_enabled_slots())

    yield

    if not restore_task.done():
        restore_task.cancel()
    try:
        await restore_task
    except asyncio.CancelledError:
        logger.info("Restore of enabled slots cancelled by shutdown")
    except Exception as exc:
        logger.error("Error restoring enabled slots: %s", exc, exc_info=True)

    await manager.shutdown()
    logger.info("rclonetray stopped")


def _error_response(
    request: Request, exc: Exception, status_code: int, detail: str
) -> JSONResponse:
    logger.warning(
        "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
    )
    return JSONResponse(status_code=status_code, content={"detail": detail})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="rclonetray",
        description="Control API for rclone mounts and syncs",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:5173", "http://127.0.0.1:5173"] if settings.debug else [])
    )
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health_router)
    app.include_router(daemon_router)
    app.include_router(bookmarks_router)
    app.include_router(mounts_router)
    app.include_router(syncs_router)

    # Global exception handlers. Starlette picks the most specific class in the MRO.

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(request, exc, 404, str(exc))

    @app.exception_handler(StateError)
    async def state_error_handler(request: Request, exc: StateError) -> JSONResponse:
        return _error_response(request, exc, 409, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error_response(request, exc, 422, str(exc) or "Invalid value")

    @app.exception_handler(RpcUnavailableError)
    async def rpc_unavailable_handler(request: Request, exc: RpcUnavailableError) -> JSONResponse:
        return _error_response(request, exc, 503, exc.message)

    @app.exception_handler(RpcTimeoutError)
    async def rpc_timeout_handler(request: Request, exc: RpcTimeoutError) -> JSONResponse:
        return _error_response(request, exc, 504, "rclone daemon timed out")

    @app.exception_handler(DaemonError)
    async def daemon_error_handler(request: Request, exc: DaemonError) -> JSONResponse:
        return _error_response(request, exc, 502, str(exc))

    @app.exception_handler(RpcError)
    async def rpc_error_handler(request: Request, exc: RpcError) -> JSONResponse:
        logger.error("RpcError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=502, content={"detail": "rclone daemon unreachable"})

    @app.exception_handler(DaemonStartupError)
    async def daemon_startup_handler(request: Request, exc: DaemonStartupError) -> JSONResponse:
        logger.error(
            "DaemonStartupError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(status_code=503, content={"detail": "rclone daemon failed to start"})

    @app.exception_handler(subprocess.CalledProcessError)
    async def subprocess_error_handler(
        request: Request, exc: subprocess.CalledProcessError
    ) -> JSONResponse:
        logger.error(
            "CalledProcessError in %s %s: cmd=%s exit=%d",
            request.method,
            request.url.path,
            exc.cmd,
            exc.returncode,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=502,
            content={"detail": "External process failed"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "rclonetray.main:app",
        host=settings.host,
        port=settings.port,
    )
