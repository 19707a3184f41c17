"""Docker lifecycle manager for the Moodle container.

Every operation is one invocation of the docker CLI. Inputs are validated
before anything is spawned, and a non-zero exit is raised as an
ExternalToolError carrying the command output.
"""

import logging
import subprocess
import sys
import threading
from datetime import datetime
from typing import Callable, List, Optional

from moodle_manager.services.docker_path import DockerPathResolver
from moodle_manager.services.errors import ExternalToolError, ValidationError
from moodle_manager.services.pull_progress import PullProgress

logger = logging.getLogger(__name__)

# Short container IDs printed by docker are 12 characters
MIN_CONTAINER_ID_LENGTH = 12
# Shortest name that can still be "repo:tag"-like
MIN_IMAGE_NAME_LENGTH = 3

DEFAULT_PORT_MAPPING = "8080:8080"
DEFAULT_COMMAND_TIMEOUT = 60


def validate_container_id(container_id: str) -> None:
    """
    Check a container ID before it is handed to docker.

    Raises:
        ValidationError: If the ID is empty or shorter than 12 characters
    """
    if not container_id:
        raise ValidationError("container_id", "container ID cannot be empty")
    if len(container_id) < MIN_CONTAINER_ID_LENGTH:
        raise ValidationError(
            "container_id",
            f"container ID too short (minimum {MIN_CONTAINER_ID_LENGTH} characters)",
            container_id,
        )


def validate_image_name(image_name: str) -> None:
    """
    Check an image name before it is handed to docker.

    Raises:
        ValidationError: If the name is empty or shorter than 3 characters
    """
    if not image_name:
        raise ValidationError("image_name", "image name cannot be empty")
    if len(image_name) < MIN_IMAGE_NAME_LENGTH:
        raise ValidationError(
            "image_name",
            f"image name too short (minimum {MIN_IMAGE_NAME_LENGTH} characters)",
            image_name,
        )


def _platform_kwargs() -> dict:
    """Extra Popen arguments; keeps console windows from flashing on Windows."""
    if sys.platform.startswith("win"):
        return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
    return {}


class DockerManager:
    """
    Drives the Moodle container through the docker CLI.

    The manager holds no container state of its own; the container ID is
    passed in by the caller (and persisted by the state store).
    """

    def __init__(
        self,
        image_name: str = "",
        resolver: Optional[DockerPathResolver] = None,
        port_mapping: str = DEFAULT_PORT_MAPPING,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ):
        self._image_name = image_name
        self.resolver = resolver or DockerPathResolver()
        self.port_mapping = port_mapping
        self.command_timeout = command_timeout

    @property
    def image_name(self) -> str:
        return self._image_name

    def set_image_name(self, image_name: str) -> None:
        self._image_name = image_name
        logger.info(f"Docker image set to: {image_name}")

    def get_image_name(self) -> str:
        return self._image_name

    def _run(self, operation: str, args: List[str], target: Optional[str] = None) -> subprocess.CompletedProcess:
        """
        Run one docker command and fail on non-zero exit.

        Args:
            operation: Name of the docker operation, used in errors
            args: Arguments after the docker binary
            target: Container ID or image the command acts on

        Returns:
            The completed process

        Raises:
            ExternalToolError: If the command cannot be spawned, times out or exits non-zero
        """
        cmd = self.resolver.command(*args)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                **_platform_kwargs(),
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"Timeout running docker {operation}")
            raise ExternalToolError(operation, target, f"timed out after {self.command_timeout}s") from e
        except OSError as e:
            logger.error(f"Could not run docker {operation}: {e}")
            raise ExternalToolError(operation, target, str(e)) from e

        if result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            logger.error(f"Docker {operation} failed: {output.strip()}")
            raise ExternalToolError(operation, target, output, result.returncode)
        return result

    # ------------------------------------------------------------------
    # Image operations
    # ------------------------------------------------------------------

    def image_exists(self) -> bool:
        """
        Check whether the configured image is available locally.

        Returns:
            True if any local repository:tag contains the configured name
        """
        validate_image_name(self._image_name)
        result = self._run("images", ["images", "--format", "{{.Repository}}:{{.Tag}}"], self._image_name)
        exists = self._image_name in result.stdout
        logger.info(f"Image {self._image_name} exists locally: {exists}")
        return exists

    def pull_image(self, progress_callback: Optional[Callable[[float, str], None]] = None) -> None:
        """
        Pull the configured image, reporting progress as it goes.

        stdout and stderr are drained on separate threads into one
        PullProgress. The call blocks until both streams are drained and
        docker has exited.

        Args:
            progress_callback: Receives (percentage, status); percentage is -1
                for status-only updates

        Raises:
            ExternalToolError: If docker cannot be spawned or the pull fails
        """
        validate_image_name(self._image_name)
        cmd = self.resolver.command("pull", self._image_name)
        logger.info(f"Pulling image: {self._image_name}")

        progress = PullProgress()
        subscription = progress.subscribe(progress_callback) if progress_callback else None

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **_platform_kwargs(),
            )
        except OSError as e:
            if subscription:
                subscription.cancel()
            raise ExternalToolError("pull", self._image_name, str(e)) from e

        captured: List[str] = []
        failures: List[str] = []
        captured_lock = threading.Lock()

        def drain(stream, name: str) -> None:
            # Keep reading to EOF so docker never blocks on a full pipe
            try:
                for line in stream:
                    with captured_lock:
                        captured.append(line)
                    try:
                        progress.process_line(line)
                    except Exception as e:
                        logger.warning(f"Error processing docker pull {name}: {e}")
                        with captured_lock:
                            failures.append(f"{name}: {e}")
            except (OSError, ValueError) as e:
                logger.error(f"Error reading docker pull {name}: {e}")
                with captured_lock:
                    failures.append(f"{name}: {e}")
                process.kill()

        workers = [
            threading.Thread(target=drain, args=(process.stdout, "stdout"), daemon=True),
            threading.Thread(target=drain, args=(process.stderr, "stderr"), daemon=True),
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()
        returncode = process.wait()

        if subscription:
            subscription.cancel()

        output = "".join(captured)
        if returncode != 0:
            logger.error(f"Docker pull failed with exit code {returncode}")
            raise ExternalToolError("pull", self._image_name, output, returncode)
        if failures:
            logger.error(f"Docker pull output could not be processed: {failures[0]}")
            raise ExternalToolError("pull", self._image_name, "\n".join(failures) + "\n" + output, returncode)

        logger.info(f"Image pulled successfully: {self._image_name}")

    # ------------------------------------------------------------------
    # Container operations
    # ------------------------------------------------------------------

    def run_container(self) -> str:
        """
        Create and start a new container from the configured image.

        Returns:
            The new container ID

        Raises:
            ValidationError: If the image name or the returned ID is invalid
            ExternalToolError: If docker run fails
        """
        validate_image_name(self._image_name)
        result = self._run(
            "run",
            ["run", "-d", "-p", self.port_mapping, self._image_name],
            self._image_name,
        )
        container_id = result.stdout.strip()
        validate_container_id(container_id)
        logger.info(f"Started container {container_id[:12]} from {self._image_name}")
        return container_id

    def start_container(self, container_id: str) -> None:
        """Start an existing, stopped container."""
        validate_container_id(container_id)
        self._run("start", ["start", container_id], container_id)
        logger.info(f"Started container: {container_id[:12]}")

    def stop_container(self, container_id: str) -> None:
        """Stop a container gracefully."""
        validate_container_id(container_id)
        self._run("stop", ["stop", container_id], container_id)
        logger.info(f"Stopped container: {container_id[:12]}")

    def force_stop_container(self, container_id: str) -> None:
        """Kill a container that would not stop gracefully."""
        validate_container_id(container_id)
        self._run("kill", ["kill", container_id], container_id)
        logger.info(f"Killed container: {container_id[:12]}")

    def is_container_running(self, container_id: str) -> bool:
        """Ask docker whether the container is currently running."""
        validate_container_id(container_id)
        result = self._run(
            "inspect",
            ["inspect", "--format={{.State.Running}}", container_id],
            container_id,
        )
        return result.stdout.strip() == "true"

    def get_container_logs(self, container_id: str, since: Optional[datetime] = None) -> str:
        """
        Fetch container logs.

        Args:
            container_id: Container to read from
            since: Only return logs after this time (sent as RFC 3339)

        Returns:
            stdout and stderr combined; the service writes to either depending on platform
        """
        validate_container_id(container_id)
        args = ["logs"]
        if since is not None:
            args.extend(["--since", since.astimezone().isoformat(timespec="seconds")])
        args.append(container_id)
        result = self._run("logs", args, container_id)
        return (result.stdout or "") + (result.stderr or "")

    def validate_container(self, container_id: str) -> None:
        """
        Confirm the container exists.

        Raises:
            ValidationError: If the ID is malformed
            ExternalToolError: If docker does not know the container
        """
        validate_container_id(container_id)
        self._run("inspect", ["inspect", container_id], container_id)
