"""Host health check endpoint."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from moodle_manager.services.health import perform_health_checks
from moodle_manager.services.moodle_launcher import MoodleLauncher, get_moodle_launcher

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    docker: bool
    internet: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(launcher: MoodleLauncher = Depends(get_moodle_launcher)):
    """Check that docker is usable and the host is online."""
    status = await perform_health_checks(launcher.docker.resolver)
    return HealthResponse(**status.to_dict())
