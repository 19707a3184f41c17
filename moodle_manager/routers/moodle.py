"""Moodle container control API endpoints."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from moodle_manager.services.moodle_launcher import MoodleLauncher, get_moodle_launcher

logger = logging.getLogger(__name__)
router = APIRouter()


class ActionResponse(BaseModel):
    """Response from a container action."""
    success: bool
    message: str


class ImageResponse(BaseModel):
    image_name: str


class CredentialsResponse(BaseModel):
    username: str
    password: str
    url: str


class ReadyResponse(BaseModel):
    """Readiness as seen by the UI."""
    ready: bool
    state: str
    error: str | None = None


class StatusResponse(BaseModel):
    state: str
    image_name: str
    error: str | None = None
    percentage: float
    status: str


@router.get("/image", response_model=ImageResponse)
async def get_image_name(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Docker image the launcher runs."""
    return ImageResponse(image_name=launcher.get_image_name())


@router.post("/run", response_model=ActionResponse)
async def run_moodle(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """
    Start Moodle.

    Returns once the container is running. Readiness and pull progress are
    reported on the event stream.
    """
    logger.info("Run requested")
    container_id = await launcher.activate()
    return ActionResponse(success=True, message=f"Container {container_id[:12]} started")


@router.post("/stop", response_model=ActionResponse)
async def stop_moodle(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Stop the Moodle container."""
    logger.info("Stop requested")
    await launcher.deactivate()
    return ActionResponse(success=True, message="Container stopped")


@router.get("/credentials", response_model=CredentialsResponse)
async def get_credentials(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Stored admin credentials, or defaults when none are known."""
    return CredentialsResponse(**launcher.get_credentials().to_dict())


@router.get("/ready", response_model=ReadyResponse)
async def is_ready(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    ready = await launcher.is_ready()
    return ReadyResponse(ready=ready, state=launcher.state.value, error=launcher.last_error)


@router.get("/status", response_model=StatusResponse)
async def get_status(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Launcher state and latest pull progress."""
    return StatusResponse(
        state=launcher.state.value,
        image_name=launcher.get_image_name(),
        error=launcher.last_error,
        percentage=launcher.last_progress["percentage"],
        status=launcher.last_progress["status"],
    )


@router.post("/open", response_model=ActionResponse)
async def open_browser(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Open the Moodle site in the default browser."""
    url = launcher.open_browser()
    return ActionResponse(success=True, message=f"Opened {url}")
