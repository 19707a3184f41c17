"""
Tests for host health checks.
"""

import subprocess
from unittest.mock import MagicMock, patch

import httpx
import pytest

from moodle_manager.services.docker_path import DockerPathResolver
from moodle_manager.services.errors import DockerNotFoundError
from moodle_manager.services.health import (
    HealthStatus,
    check_docker_health,
    check_internet_health,
    perform_health_checks,
)


@pytest.fixture
def resolver():
    resolver = MagicMock(spec=DockerPathResolver)
    resolver.resolve.return_value = "/usr/bin/docker"
    return resolver


class TestDockerHealth:
    """Tests for check_docker_health."""

    def test_healthy(self, resolver):
        result = subprocess.CompletedProcess([], 0, stdout="Docker version 26.1.0", stderr="")
        with patch("moodle_manager.services.health.subprocess.run", return_value=result) as mock_run:
            assert check_docker_health(resolver) is True

        assert mock_run.call_args[0][0] == ["/usr/bin/docker", "--version"]

    def test_not_installed(self, resolver):
        resolver.resolve.side_effect = DockerNotFoundError("Docker executable not found.")
        with patch("moodle_manager.services.health.subprocess.run") as mock_run:
            assert check_docker_health(resolver) is False
        mock_run.assert_not_called()

    def test_command_fails(self, resolver):
        result = subprocess.CompletedProcess([], 1, stdout="", stderr="permission denied")
        with patch("moodle_manager.services.health.subprocess.run", return_value=result):
            assert check_docker_health(resolver) is False

    def test_timeout(self, resolver):
        with patch(
            "moodle_manager.services.health.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=5),
        ):
            assert check_docker_health(resolver) is False


class TestInternetHealth:
    """Tests for check_internet_health."""

    @pytest.mark.asyncio
    async def test_any_response_is_online(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401))
        assert await check_internet_health(["https://registry.example"], transport=transport) is True

    @pytest.mark.asyncio
    async def test_falls_through_targets(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == "down.example":
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(200)

        transport = httpx.MockTransport(handler)
        result = await check_internet_health(["https://down.example", "https://up.example"], transport=transport)

        assert result is True
        assert seen == ["down.example", "up.example"]

    @pytest.mark.asyncio
    async def test_offline(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        transport = httpx.MockTransport(handler)
        assert await check_internet_health(["https://a.example", "https://b.example"], transport=transport) is False


class TestPerformHealthChecks:
    """Tests for the combined check."""

    @pytest.mark.asyncio
    async def test_combines_results(self, resolver):
        with patch("moodle_manager.services.health.check_docker_health", return_value=True), \
                patch("moodle_manager.services.health.check_internet_health", return_value=False):
            status = await perform_health_checks(resolver)

        assert status == HealthStatus(docker=True, internet=False)
        assert status.to_dict() == {"docker": True, "internet": False}
