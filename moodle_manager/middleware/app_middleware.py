"""
Middleware configuration for the launcher API.

Centralizes CORS configuration, request logging, and global exception handlers.
"""

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from moodle_manager.services.errors import (
    AlreadyRunningError,
    DockerNotFoundError,
    LauncherError,
    StateNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("api.requests")


def _parse_cors_origins(cors_origins: str) -> list[str]:
    if not cors_origins or cors_origins.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in cors_origins.split(",") if origin.strip()]


def setup_cors_middleware(app: FastAPI, cors_origins: str = "*") -> None:
    """Configure CORS middleware for the FastAPI application."""
    allowed_origins = _parse_cors_origins(cors_origins)
    logger.info(f"CORS configured with origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=allowed_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log API requests with status and duration.

    Health checks and the event stream are skipped; the UI polls the
    former and holds the latter open.
    """

    EXCLUDED_PATHS = {
        "/health",
        "/api/moodle/events",
        "/api/moodle/ready",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    def should_log_request(self, path: str) -> bool:
        return path not in self.EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.should_log_request(path):
            return await call_next(request)

        start_time = time.time()
        request_logger.info(f"-> {request.method} {path}")
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000
        request_logger.info(f"<- {request.method} {path} - {response.status_code} - {duration_ms:.2f}ms")
        return response


def status_code_for(exc: LauncherError) -> int:
    """HTTP status for a launcher failure."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AlreadyRunningError):
        return 409
    if isinstance(exc, StateNotFoundError):
        return 404
    return 500


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure global exception handlers for the FastAPI application."""

    @app.exception_handler(DockerNotFoundError)
    async def docker_not_found_handler(request: Request, exc: DockerNotFoundError):
        logger.error(f"Docker not found: {exc.message}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": exc.message,
                "suggestions": exc.suggestions,
                "error_type": "docker_not_found",
            },
        )

    @app.exception_handler(LauncherError)
    async def launcher_exception_handler(request: Request, exc: LauncherError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc}")
        else:
            logger.warning(f"{type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": str(exc),
                "error_type": type(exc).__name__,
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )


def setup_middleware(app: FastAPI, cors_origins: str = "*") -> None:
    """Set up all middleware for the FastAPI application."""
    app.add_middleware(RequestLoggingMiddleware)
    logger.info("Request logging middleware enabled")

    setup_cors_middleware(app, cors_origins)

    setup_exception_handlers(app)
    logger.info("Middleware and exception handlers configured")
