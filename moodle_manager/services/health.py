"""
Host health checks.

Before offering to start Moodle the UI checks that docker is usable and that
the machine is online (the first start has to pull a multi-GB image).
"""

import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import httpx

from moodle_manager.services.docker_path import DockerPathResolver
from moodle_manager.services.errors import DockerNotFoundError

logger = logging.getLogger(__name__)

DOCKER_CHECK_TIMEOUT = 5.0
INTERNET_CHECK_TIMEOUT = 10.0

# Docker Hub first since that is where the image comes from, then Cloudflare DNS
CONNECTIVITY_TARGETS = [
    "https://registry-1.docker.io/v2/",
    "https://1.1.1.1",
]


@dataclass
class HealthStatus:
    """Result of the host health checks."""

    docker: bool
    internet: bool

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


def check_docker_health(resolver: Optional[DockerPathResolver] = None) -> bool:
    """
    Verify docker is installed and runs.

    Args:
        resolver: Resolver used to find the docker binary

    Returns:
        True if `docker --version` succeeds
    """
    resolver = resolver or DockerPathResolver()
    logger.debug(f"Starting Docker health check (platform: {sys.platform})")
    logger.debug(f"Current PATH: {os.environ.get('PATH', '')}")

    try:
        docker_path = resolver.resolve()
    except DockerNotFoundError as e:
        logger.error(f"Docker path detection failed: {e.message}")
        return False

    try:
        result = subprocess.run(
            [docker_path, "--version"],
            capture_output=True,
            text=True,
            timeout=DOCKER_CHECK_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Docker health check timed out using {docker_path}")
        return False
    except OSError as e:
        logger.error(f"Docker health check failed using {docker_path}: {e}")
        return False

    if result.returncode != 0:
        logger.error(f"Docker health check failed using {docker_path}: {result.stderr.strip()}")
        return False

    logger.debug(f"Docker health check passed using: {docker_path}")
    return True


async def check_internet_health(
    targets: Optional[List[str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Check connectivity by requesting well-known endpoints.

    Any HTTP response from any target counts as online.
    """
    targets = targets or CONNECTIVITY_TARGETS
    async with httpx.AsyncClient(timeout=INTERNET_CHECK_TIMEOUT, transport=transport) as client:
        for target in targets:
            try:
                await client.get(target)
            except httpx.HTTPError as e:
                logger.debug(f"Connectivity check failed for {target}: {e}")
                continue
            logger.debug(f"Internet health check passed using: {target}")
            return True

    logger.warning("Internet health check failed for all targets")
    return False


async def perform_health_checks(resolver: Optional[DockerPathResolver] = None) -> HealthStatus:
    """Run the docker and internet checks concurrently."""
    docker_ok, internet_ok = await asyncio.gather(
        asyncio.to_thread(check_docker_health, resolver),
        check_internet_health(),
    )
    status = HealthStatus(docker=docker_ok, internet=internet_ok)
    logger.info(f"Health check results: {status}")
    return status
