"""
Moodle Prototype Manager
FastAPI application entry point
"""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from moodle_manager import __version__
from moodle_manager.config import LauncherSettings, get_launcher_settings, setup_logging
from moodle_manager.middleware import setup_middleware
from moodle_manager.routers import health, moodle, moodle_events
from moodle_manager.services.moodle_launcher import get_moodle_launcher, init_moodle_launcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: LauncherSettings = app.state.settings
    log_path = setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    logger.info("Moodle Prototype Manager starting up...")
    if log_path:
        logger.info(f"Logging to {log_path}")
    logger.info(f"Data directory: {settings.DATA_DIR}")

    if app.state.init_launcher:
        init_moodle_launcher(settings)
    logger.info("Launcher initialized")

    yield

    # Stop the container on exit
    await get_moodle_launcher().shutdown()
    logger.info("Moodle Prototype Manager shut down")


def create_app(settings: Optional[LauncherSettings] = None, init_launcher: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to the cached environment settings
        init_launcher: Create the global launcher on startup. Tests that install
            their own launcher pass False.
    """
    settings = settings or get_launcher_settings()

    app = FastAPI(
        title="Moodle Prototype Manager API",
        description="Runs a local Moodle prototype in Docker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.init_launcher = init_launcher

    setup_middleware(app, settings.CORS_ORIGINS)

    app.include_router(health.router, tags=["health"])
    app.include_router(moodle.router, prefix="/api/moodle", tags=["moodle"])
    app.include_router(moodle_events.router, prefix="/api/moodle", tags=["moodle"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Moodle Prototype Manager",
            "version": __version__,
            "status": "running",
        }

    return app


def run() -> None:
    """Console entry point."""
    settings = get_launcher_settings()
    parser = argparse.ArgumentParser(description="Moodle Prototype Manager")
    parser.add_argument("--host", type=str, default=settings.HOST, help=f"Host to bind to (default: {settings.HOST})")
    parser.add_argument("--port", type=int, default=settings.PORT, help=f"Port to listen on (default: {settings.PORT})")
    args = parser.parse_args()

    uvicorn.run(create_app(settings), host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    run()
