"""
Moodle launcher: the activation/deactivation state machine.

Activation either restarts the container recorded in the state store or
creates a new one (pulling the image first if needed), then hands off to a
background readiness wait:

- first run: poll the container logs until the generated admin password
  and site URL appear, then persist them
- subsequent run: a password is already known, so poll the site over
  HTTP until it answers and re-save the password with the confirmed URL

Docker calls are blocking and run through asyncio.to_thread. State changes
and pull progress are published to subscribers on the event loop thread.
"""

import asyncio
import logging
import time
import webbrowser
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from moodle_manager.config.launcher_settings import LauncherSettings, get_launcher_settings
from moodle_manager.config.logging import mask_password
from moodle_manager.models.credentials import Credentials
from moodle_manager.services.docker_manager import DockerManager, validate_image_name
from moodle_manager.services.docker_path import DockerPathResolver
from moodle_manager.services.errors import (
    AlreadyRunningError,
    ExternalToolError,
    LauncherError,
    ReadinessTimeoutError,
    StateError,
    StateNotFoundError,
    TransientIOError,
)
from moodle_manager.services.log_parser import LogParser
from moodle_manager.services.state_store import CredentialStore, FileStateStore

logger = logging.getLogger(__name__)

PULL_PROGRESS_EVENT = "docker:pull:progress"
STATE_EVENT = "launcher:state"


class LauncherState(str, Enum):
    """Where the launcher is in the activation lifecycle."""

    IDLE = "idle"
    CHECKING_EXISTING = "checking_existing"
    RESTARTING_EXISTING = "restarting_existing"
    CHECKING_IMAGE = "checking_image"
    PULLING = "pulling"
    CREATING = "creating"
    WAITING_FOR_READINESS = "waiting_for_readiness"
    READY = "ready"
    FAILED = "failed"


@dataclass
class LauncherEvent:
    """Notification delivered to launcher subscribers."""

    event: str
    data: Dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[LauncherEvent], None]


class MoodleLauncher:
    """Orchestrates the Moodle container from activation to readiness."""

    def __init__(
        self,
        docker_manager: DockerManager,
        store: FileStateStore,
        log_parser: Optional[LogParser] = None,
        service_url: str = "http://localhost:8080",
        poll_interval: float = 2.0,
        backoff_interval: float = 5.0,
        max_log_errors: int = 5,
        subsequent_timeout: float = 600.0,
        probe_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.docker = docker_manager
        self.store = store
        self.credentials = CredentialStore(store)
        self.log_parser = log_parser or LogParser()

        self.service_url = service_url
        self.poll_interval = poll_interval
        self.backoff_interval = backoff_interval
        self.max_log_errors = max_log_errors
        self.subsequent_timeout = subsequent_timeout
        self.probe_timeout = probe_timeout
        self._transport = transport

        self.state = LauncherState.IDLE
        self.last_error: Optional[str] = None
        self.last_progress: Dict[str, Any] = {"percentage": 0.0, "status": ""}

        self._lock = asyncio.Lock()
        self._listeners: List[EventCallback] = []
        self._readiness_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def from_settings(cls, settings: LauncherSettings, image_name: str) -> "MoodleLauncher":
        """Build a launcher and its collaborators from settings."""
        docker_manager = DockerManager(
            image_name=image_name,
            resolver=DockerPathResolver(settings.DOCKER_BINARY),
            port_mapping=settings.PORT_MAPPING,
            command_timeout=settings.COMMAND_TIMEOUT,
        )
        return cls(
            docker_manager=docker_manager,
            store=FileStateStore(settings.DATA_DIR),
            service_url=settings.SERVICE_URL,
            poll_interval=settings.POLL_INTERVAL,
            backoff_interval=settings.BACKOFF_INTERVAL,
            max_log_errors=settings.MAX_LOG_ERRORS,
            subsequent_timeout=settings.SUBSEQUENT_TIMEOUT,
            probe_timeout=settings.PROBE_TIMEOUT,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register for state and pull progress events.

        Returns:
            A function that removes the subscription
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: LauncherEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Launcher event listener raised: {e}")

    def _set_state(self, state: LauncherState) -> None:
        if state == self.state:
            return
        logger.info(f"Launcher state: {self.state.value} -> {state.value}")
        self.state = state
        self._emit(LauncherEvent(STATE_EVENT, {"state": state.value, "error": self.last_error}))

    def _on_pull_progress(self, percentage: float, status: str) -> None:
        # Called from the pull's reader threads
        logger.debug(f"Pull progress: {percentage:.1f}% - {status}")
        if percentage >= 0:
            self.last_progress = {"percentage": percentage, "status": status}
        else:
            self.last_progress = {"percentage": self.last_progress["percentage"], "status": status}
        event = LauncherEvent(PULL_PROGRESS_EVENT, {"percentage": percentage, "status": status})
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._emit, event)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(self) -> str:
        """
        Start Moodle and begin waiting for it to become ready.

        Returns once the container is running; readiness is reported later
        through state events.

        Returns:
            The container ID

        Raises:
            AlreadyRunningError: If the recorded container is already running
            ValidationError: If no usable image name is configured
            ExternalToolError: If checking, pulling or creating fails
            StateError: If the new container ID cannot be persisted
        """
        async with self._lock:
            self._loop = asyncio.get_running_loop()
            previous_state = self.state
            self.last_error = None

            try:
                container_id = await self._restart_existing()
                if container_id is None:
                    container_id = await self._create_new()
            except AlreadyRunningError:
                self._set_state(previous_state)
                raise
            except LauncherError as e:
                self.last_error = str(e)
                logger.error(f"Activation failed: {e}")
                self._set_state(LauncherState.FAILED)
                raise

            self._start_readiness_wait(container_id)
            return container_id

    async def _restart_existing(self) -> Optional[str]:
        """Restart the recorded container; None means create a new one."""
        if not self.store.container_id_exists():
            return None

        self._set_state(LauncherState.CHECKING_EXISTING)
        try:
            container_id = self.store.load_container_id()
        except StateError as e:
            logger.warning(f"Ignoring unreadable container ID: {e}")
            return None

        logger.info(f"Found existing container ID: {container_id[:12]}")
        try:
            await asyncio.to_thread(self.docker.validate_container, container_id)
            running = await asyncio.to_thread(self.docker.is_container_running, container_id)
        except LauncherError as e:
            logger.warning(f"Error checking existing container, creating a new one: {e}")
            return None

        if running:
            logger.warning("Container is already running")
            raise AlreadyRunningError(f"Container {container_id[:12]} is already running")

        self._set_state(LauncherState.RESTARTING_EXISTING)
        try:
            await asyncio.to_thread(self.docker.start_container, container_id)
        except LauncherError as e:
            logger.warning(f"Failed to start existing container, creating a new one: {e}")
            return None

        logger.info(f"Restarted existing container: {container_id[:12]}")
        return container_id

    async def _create_new(self) -> str:
        self._set_state(LauncherState.CHECKING_IMAGE)
        validate_image_name(self.docker.image_name)

        if await asyncio.to_thread(self.docker.image_exists):
            logger.info("Docker image already exists")
        else:
            logger.info("Docker image not found, pulling with progress tracking...")
            self._set_state(LauncherState.PULLING)
            self.last_progress = {"percentage": 0.0, "status": "Starting download..."}
            await asyncio.to_thread(self.docker.pull_image, self._on_pull_progress)

        # A new container generates a new password
        try:
            self.credentials.clear()
        except StateError as e:
            logger.warning(f"Failed to clear old credentials: {e}")

        self._set_state(LauncherState.CREATING)
        container_id = await asyncio.to_thread(self.docker.run_container)
        try:
            self.store.save_container_id(container_id)
        except LauncherError as e:
            logger.error(f"Failed to save container ID: {e}")
            raise StateError(f"Failed to save container ID: {e}") from e

        logger.info(f"Container started with ID: {container_id[:12]}")
        return container_id

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _start_readiness_wait(self, container_id: str) -> None:
        if self._readiness_task is not None and not self._readiness_task.done():
            self._readiness_task.cancel()
        self._set_state(LauncherState.WAITING_FOR_READINESS)
        self._readiness_task = asyncio.create_task(self._wait_for_readiness(container_id))

    async def _cancel_readiness_wait(self) -> None:
        task = self._readiness_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def readiness_task(self) -> Optional[asyncio.Task]:
        return self._readiness_task

    async def _wait_for_readiness(self, container_id: str) -> None:
        try:
            try:
                existing = self.credentials.load()
            except StateError as e:
                logger.warning(f"Could not load stored credentials: {e}")
                existing = None

            if existing is not None and existing.has_password():
                logger.info("Subsequent run - testing HTTP availability instead of parsing logs")
                await self._wait_for_http(existing.password)
            else:
                logger.info("First run - extracting credentials from logs")
                await self._wait_for_credentials(container_id)
        except asyncio.CancelledError:
            logger.info("Readiness wait cancelled")
            raise
        except LauncherError as e:
            self.last_error = str(e)
            logger.error(f"Readiness wait failed: {e}")
            self._set_state(LauncherState.FAILED)
            return
        except Exception as e:
            self.last_error = str(e)
            logger.exception(f"Unexpected error while waiting for readiness: {e}")
            self._set_state(LauncherState.FAILED)
            return

        self._set_state(LauncherState.READY)

    async def _wait_for_http(self, password: str) -> None:
        start = time.monotonic()
        while time.monotonic() - start < self.subsequent_timeout:
            if await self.probe():
                logger.info("Container is ready - Moodle is responding on HTTP")
                self.credentials.update(password, self.service_url)
                return
            logger.debug("Waiting for Moodle HTTP response...")
            await asyncio.sleep(self.poll_interval)
        raise ReadinessTimeoutError(self.service_url, self.subsequent_timeout)

    async def _fetch_logs(self, container_id: str) -> str:
        try:
            return await asyncio.to_thread(self.docker.get_container_logs, container_id)
        except ExternalToolError as e:
            raise TransientIOError(f"Failed to fetch container logs: {e}") from e

    async def _wait_for_credentials(self, container_id: str) -> None:
        # Unbounded: first-time installs can take half an hour on slow hosts
        error_count = 0
        while True:
            try:
                logs = await self._fetch_logs(container_id)
            except TransientIOError as e:
                error_count += 1
                logger.debug(f"Error getting container logs (count: {error_count}): {e}")
                if error_count > self.max_log_errors:
                    logger.warning("Multiple log errors detected, increasing poll interval")
                    await asyncio.sleep(self.backoff_interval)
                else:
                    await asyncio.sleep(self.poll_interval)
                continue

            error_count = 0
            found = self.log_parser.extract_credentials(logs)
            logger.debug(
                f"Credentials extracted - Password: {mask_password(found.password)}, URL: {found.url}"
            )
            if found.is_complete():
                self.credentials.update(found.password, found.url)
                logger.info("Credentials extracted and saved successfully")
                return
            await asyncio.sleep(self.poll_interval)

    async def probe(self) -> bool:
        """One HTTP GET against the site; any response means it is up."""
        try:
            async with httpx.AsyncClient(timeout=self.probe_timeout, transport=self._transport) as client:
                response = await client.get(self.service_url)
                return response.status_code > 0
        except httpx.HTTPError:
            return False

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def deactivate(self) -> None:
        """
        Stop the recorded container, killing it if a graceful stop fails.

        Raises:
            StateNotFoundError: If no container has been recorded
            StateError: If the recorded container ID cannot be read
            ExternalToolError: If the container is unknown to docker or both stop and kill fail
        """
        async with self._lock:
            if not self.store.container_id_exists():
                raise StateNotFoundError("No container ID found")
            await self._cancel_readiness_wait()
            container_id = self.store.load_container_id()
            logger.info(f"Attempting to stop container: {container_id[:12]}")

            await asyncio.to_thread(self.docker.validate_container, container_id)

            try:
                running = await asyncio.to_thread(self.docker.is_container_running, container_id)
            except ExternalToolError as e:
                logger.warning(f"Failed to check container status, stopping anyway: {e}")
            else:
                if not running:
                    logger.info("Container is already stopped")
                    self._set_state(LauncherState.IDLE)
                    return

            try:
                await asyncio.to_thread(self.docker.stop_container, container_id)
            except ExternalToolError as e:
                logger.error(f"Graceful stop failed, attempting force stop: {e}")
                try:
                    await asyncio.to_thread(self.docker.force_stop_container, container_id)
                except ExternalToolError as force_error:
                    logger.error(f"Force stop also failed: {force_error}")
                    raise ExternalToolError(
                        "stop",
                        container_id,
                        f"graceful: {e}; force: {force_error}",
                    ) from force_error
                logger.warning("Container force stopped successfully")
            else:
                logger.info("Container stopped gracefully")

            self._set_state(LauncherState.IDLE)

    async def shutdown(self) -> None:
        """Process-exit cleanup: cancel the readiness wait and stop the container. Never raises."""
        logger.info("Application shutdown initiated")

        await self._cancel_readiness_wait()

        if not self.store.container_id_exists():
            logger.info("No container ID file found during shutdown")
            return

        try:
            container_id = self.store.load_container_id()
        except StateError as e:
            logger.error(f"Failed to load container ID during shutdown: {e}")
            return

        try:
            running = await asyncio.to_thread(self.docker.is_container_running, container_id)
        except LauncherError as e:
            logger.error(f"Failed to check container status during shutdown: {e}")
            logger.warning("Attempting failsafe container stop during shutdown")
            try:
                await asyncio.to_thread(self.docker.stop_container, container_id)
            except LauncherError as stop_error:
                logger.error(f"Failsafe container stop failed during shutdown: {stop_error}")
            return

        if not running:
            logger.info("Container is already stopped during shutdown")
            return

        logger.info("Stopping running container on shutdown...")
        try:
            await asyncio.to_thread(self.docker.stop_container, container_id)
        except LauncherError as e:
            logger.error(f"Failed to stop container during shutdown: {e}")
        else:
            logger.info("Container stopped successfully during shutdown")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_ready(self) -> bool:
        """Probe the site if a container is recorded, else report whether credentials exist."""
        if self.store.container_id_exists():
            return await self.probe()
        return self.credentials.exists()

    def get_credentials(self) -> Credentials:
        """Stored credentials, or defaults when they cannot be loaded."""
        try:
            return self.credentials.load()
        except StateError as e:
            logger.warning(f"Returning default credentials: {e}")
            return Credentials.default()

    def get_image_name(self) -> str:
        return self.docker.get_image_name()

    def open_browser(self) -> str:
        """
        Open the stored site URL in the default browser.

        Returns:
            The URL that was opened

        Raises:
            StateNotFoundError: If no URL is known yet
            ExternalToolError: If no browser could be launched
        """
        credentials = self.credentials.load()
        if not credentials.has_url():
            raise StateNotFoundError("No URL available")
        if not webbrowser.open(credentials.url):
            raise ExternalToolError("open", credentials.url, "no browser available")
        return credentials.url


def resolve_image_name(settings: LauncherSettings, store: FileStateStore) -> str:
    """
    Pick the image to run: settings override, then image.docker, then the default.
    """
    if settings.IMAGE_NAME:
        logger.info(f"Using image from settings: {settings.IMAGE_NAME}")
        return settings.IMAGE_NAME
    try:
        return store.load_image_name()
    except StateNotFoundError as e:
        logger.error(f"Failed to load image configuration: {e}")
        logger.warning(
            f"FALLBACK: Using default image '{settings.DEFAULT_IMAGE_NAME}' - "
            f"please create image.docker file with correct image name"
        )
        return settings.DEFAULT_IMAGE_NAME


# Global instance
_moodle_launcher: Optional[MoodleLauncher] = None


def init_moodle_launcher(settings: Optional[LauncherSettings] = None) -> MoodleLauncher:
    """Create the global launcher from settings, replacing any existing one."""
    global _moodle_launcher
    settings = settings or get_launcher_settings()
    image_name = resolve_image_name(settings, FileStateStore(settings.DATA_DIR))
    _moodle_launcher = MoodleLauncher.from_settings(settings, image_name)
    logger.info(f"Using Docker image: {image_name}")
    return _moodle_launcher


def set_moodle_launcher(launcher: Optional[MoodleLauncher]) -> None:
    global _moodle_launcher
    _moodle_launcher = launcher


def get_moodle_launcher() -> MoodleLauncher:
    """Get the global MoodleLauncher instance."""
    if _moodle_launcher is None:
        return init_moodle_launcher()
    return _moodle_launcher
