"""
Docker executable discovery.

GUI-launched processes often run with a reduced PATH (notably on macOS), so
the docker binary is looked up on PATH first and then in the usual install
locations for each platform. The result is memoized on the resolver
instance, which is constructed once and handed to whatever needs it.
"""

import logging
import os
import shutil
import sys
import threading
from pathlib import Path
from typing import List, Optional

from moodle_manager.services.errors import DockerNotFoundError

logger = logging.getLogger(__name__)

MACOS_PATHS = [
    "/usr/local/bin/docker",
    "/opt/homebrew/bin/docker",  # Apple Silicon Homebrew
    "/Applications/Docker.app/Contents/Resources/bin/docker",
    "/usr/bin/docker",
]

LINUX_PATHS = [
    "/usr/bin/docker",
    "/usr/local/bin/docker",
    "/snap/bin/docker",
    "/opt/docker/bin/docker",
]

WINDOWS_PATHS = [
    r"C:\Program Files\Docker\Docker\resources\bin\docker.exe",
    r"C:\Program Files (x86)\Docker\Docker\resources\bin\docker.exe",
    r"C:\ProgramData\DockerDesktop\version-bin\docker.exe",
]

# Directories GUI apps on macOS commonly miss from PATH
MACOS_EXTRA_DIRS = ["/usr/local/bin", "/opt/homebrew/bin", "/usr/bin"]


class DockerPathResolver:
    """Locates the docker executable and caches the answer."""

    def __init__(self, explicit_path: Optional[str] = None, platform: Optional[str] = None):
        """
        Args:
            explicit_path: Binary configured by the user; skips discovery when it exists
            platform: Override for sys.platform (used by tests)
        """
        self._explicit_path = explicit_path
        self._platform = platform or sys.platform
        self._cached: Optional[str] = None
        self._lock = threading.Lock()

    def candidate_paths(self) -> List[str]:
        """Well-known install locations for the current platform."""
        if self._platform == "darwin":
            return list(MACOS_PATHS)
        if self._platform.startswith("win"):
            candidates = list(WINDOWS_PATHS)
            for env_var in ("PROGRAMFILES", "PROGRAMFILES(X86)"):
                base = os.environ.get(env_var)
                if base:
                    candidates.append(str(Path(base) / "Docker" / "Docker" / "resources" / "bin" / "docker.exe"))
            return candidates
        return list(LINUX_PATHS)

    def _discover(self) -> str:
        if self._explicit_path:
            if Path(self._explicit_path).is_file():
                return self._explicit_path
            logger.warning(f"Configured docker binary not found: {self._explicit_path}")

        found = shutil.which("docker")
        if found:
            return found

        for candidate in self.candidate_paths():
            if Path(candidate).is_file():
                return candidate

        if self._platform == "darwin":
            search_path = os.environ.get("PATH", "")
            for extra in MACOS_EXTRA_DIRS:
                if extra not in search_path.split(os.pathsep):
                    search_path = f"{search_path}{os.pathsep}{extra}" if search_path else extra
            found = shutil.which("docker", path=search_path)
            if found:
                return found

        if self._platform.startswith("win"):
            found = shutil.which("docker.exe")
            if found:
                return found

        raise DockerNotFoundError(
            "Docker executable not found. Please ensure Docker is installed and accessible."
        )

    def resolve(self) -> str:
        """
        Return the docker executable path.

        Raises:
            DockerNotFoundError: If no docker binary can be located
        """
        with self._lock:
            if self._cached is None:
                self._cached = self._discover()
                logger.debug(f"Resolved docker executable: {self._cached}")
            return self._cached

    def resolve_or_default(self) -> str:
        """Return the resolved path, or plain "docker" so the spawn fails with a specific error."""
        try:
            return self.resolve()
        except DockerNotFoundError as e:
            logger.warning(f"Docker path detection failed, falling back to 'docker': {e.message}")
            return "docker"

    def reset(self) -> None:
        """Forget the cached path so the next call searches again."""
        with self._lock:
            self._cached = None

    def command(self, *args: str) -> List[str]:
        """Build an argv list for a docker invocation."""
        return [self.resolve_or_default(), *args]
