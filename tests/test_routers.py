"""
Tests for the HTTP API.
"""

import os
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from moodle_manager.config import LauncherSettings
from moodle_manager.main import create_app
from moodle_manager.models.credentials import Credentials
from moodle_manager.services.errors import (
    AlreadyRunningError,
    ExternalToolError,
    StateNotFoundError,
    ValidationError,
)
from moodle_manager.services.health import HealthStatus
from moodle_manager.services.moodle_launcher import (
    LauncherState,
    MoodleLauncher,
    get_moodle_launcher,
    set_moodle_launcher,
)

IMAGE = "wenkhairu/moodle-prototype:502-stable"
CONTAINER_ID = "4f2a0e7b1c9d8e7f6a5b4c3d2e1f"


@pytest.fixture
def launcher():
    launcher = MagicMock(spec=MoodleLauncher)
    launcher.state = LauncherState.IDLE
    launcher.last_error = None
    launcher.last_progress = {"percentage": 0.0, "status": ""}
    launcher.docker = MagicMock()
    launcher.get_image_name.return_value = IMAGE
    launcher.activate.return_value = CONTAINER_ID
    launcher.is_ready.return_value = False
    launcher.get_credentials.return_value = Credentials.default()
    return launcher


@pytest.fixture
def client(launcher, tmp_path):
    with patch.dict(os.environ, {}, clear=True):
        settings = LauncherSettings(_env_file=None, DATA_DIR=tmp_path)
    app = create_app(settings, init_launcher=False)
    app.dependency_overrides[get_moodle_launcher] = lambda: launcher
    set_moodle_launcher(launcher)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        set_moodle_launcher(None)


class TestMoodleRoutes:
    """Tests for /api/moodle endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_image_name(self, client):
        response = client.get("/api/moodle/image")
        assert response.json() == {"image_name": IMAGE}

    def test_run(self, client, launcher):
        response = client.post("/api/moodle/run")

        assert response.status_code == 200
        assert response.json()["success"] is True
        launcher.activate.assert_awaited_once()

    def test_run_already_running(self, client, launcher):
        launcher.activate.side_effect = AlreadyRunningError("Container 4f2a0e7b1c9d is already running")

        response = client.post("/api/moodle/run")

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]

    def test_run_validation_error(self, client, launcher):
        launcher.activate.side_effect = ValidationError("image_name", "image name cannot be empty")

        response = client.post("/api/moodle/run")

        assert response.status_code == 400
        assert response.json()["error_type"] == "ValidationError"

    def test_stop(self, client, launcher):
        response = client.post("/api/moodle/stop")

        assert response.status_code == 200
        launcher.deactivate.assert_awaited_once()

    def test_stop_without_container(self, client, launcher):
        launcher.deactivate.side_effect = StateNotFoundError("No container ID found")

        response = client.post("/api/moodle/stop")

        assert response.status_code == 404
        assert response.json()["detail"] == "No container ID found"

    def test_stop_failure(self, client, launcher):
        launcher.deactivate.side_effect = ExternalToolError("stop", CONTAINER_ID, "graceful: x; force: y")

        response = client.post("/api/moodle/stop")

        assert response.status_code == 500

    def test_credentials(self, client, launcher):
        launcher.get_credentials.return_value = Credentials(password="s3cret", url="http://localhost:8080")

        response = client.get("/api/moodle/credentials")

        assert response.json() == {
            "username": "admin",
            "password": "s3cret",
            "url": "http://localhost:8080",
        }

    def test_ready(self, client, launcher):
        launcher.is_ready.return_value = True
        launcher.state = LauncherState.READY

        response = client.get("/api/moodle/ready")

        assert response.json() == {"ready": True, "state": "ready", "error": None}

    def test_status(self, client, launcher):
        launcher.state = LauncherState.PULLING
        launcher.last_progress = {"percentage": 42.0, "status": "Downloading layers (1/3 completed)"}

        response = client.get("/api/moodle/status")

        body = response.json()
        assert body["state"] == "pulling"
        assert body["percentage"] == 42.0
        assert body["image_name"] == IMAGE

    def test_open_browser(self, client, launcher):
        launcher.open_browser.return_value = "http://localhost:8080"

        response = client.post("/api/moodle/open")

        assert response.status_code == 200
        assert "http://localhost:8080" in response.json()["message"]

    def test_open_browser_without_url(self, client, launcher):
        launcher.open_browser.side_effect = StateNotFoundError("No Moodle URL is known yet")

        response = client.post("/api/moodle/open")

        assert response.status_code == 404

    def test_shutdown_stops_container(self, launcher, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            settings = LauncherSettings(_env_file=None, DATA_DIR=tmp_path)
        app = create_app(settings, init_launcher=False)
        set_moodle_launcher(launcher)
        try:
            with TestClient(app):
                pass
        finally:
            set_moodle_launcher(None)

        launcher.shutdown.assert_awaited_once()


class TestHealthRoute:
    """Tests for /health."""

    def test_health(self, client):
        with patch(
            "moodle_manager.routers.health.perform_health_checks",
            return_value=HealthStatus(docker=True, internet=False),
        ):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"docker": True, "internet": False}
