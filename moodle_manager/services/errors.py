"""
Exception types for the Moodle launcher.

Every failure raised by the services layer derives from LauncherError so the
HTTP layer can render it uniformly. The orchestrator decides per state which
of these are fatal and which trigger a fallback.
"""

from typing import Any, List, Optional


class LauncherError(Exception):
    """Base exception for launcher failures."""

    pass


class ValidationError(LauncherError):
    """Raised for a malformed or empty image name or container ID."""

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        if value:
            message = f"validation failed for field {field} (value: {value!r}): {reason}"
        else:
            message = f"validation failed for field {field}: {reason}"
        super().__init__(message)


class ExternalToolError(LauncherError):
    """Raised when a docker command exits non-zero or cannot be spawned."""

    def __init__(
        self,
        operation: str,
        target: Optional[str] = None,
        output: str = "",
        returncode: Optional[int] = None,
    ):
        self.operation = operation
        self.target = target
        self.output = output
        self.returncode = returncode

        message = f"docker {operation} failed"
        if target:
            message += f" for {target}"
        if returncode is not None:
            message += f" (exit code {returncode})"
        if output:
            message += f": {output.strip()}"
        super().__init__(message)


class DockerNotFoundError(LauncherError):
    """Raised when the docker executable cannot be located."""

    DEFAULT_SUGGESTIONS = [
        "Make sure Docker Desktop is installed and running",
        "Verify Docker is in your system PATH",
        "Try restarting the application after installing Docker",
    ]

    def __init__(self, message: str, suggestions: Optional[List[str]] = None):
        self.message = message
        self.suggestions = suggestions if suggestions is not None else list(self.DEFAULT_SUGGESTIONS)
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.suggestions:
            return self.message
        lines = [self.message, "", "Suggestions:"]
        lines.extend(f"- {s}" for s in self.suggestions)
        return "\n".join(lines)


class TransientIOError(LauncherError):
    """A log or probe fetch failed during readiness polling. Retried internally."""

    pass


class ReadinessTimeoutError(LauncherError):
    """The container did not answer the readiness probe in time."""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        super().__init__(f"Timeout waiting for {url} to respond after {timeout:.0f}s")


class AlreadyRunningError(LauncherError):
    """Activation was requested while the container is already running."""

    pass


class StateError(LauncherError):
    """Reading or writing persisted launcher state failed."""

    pass


class StateNotFoundError(StateError):
    """The requested piece of persisted state does not exist."""

    pass
