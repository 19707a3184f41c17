"""
Persistent launcher state.

Three small files live in the data directory:

- container.id  - ID of the container created for the current image
- moodle.txt    - discovered credentials as "password=...\\nurl=...\\n"
- image.docker  - optional image name override shipped next to the app

FileStateStore handles the file formats; CredentialStore layers the
"missing means defaults" behaviour on top of it.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from moodle_manager.models.credentials import Credentials, DEFAULT_USERNAME
from moodle_manager.services.docker_manager import validate_container_id, validate_image_name
from moodle_manager.services.errors import StateError, StateNotFoundError, ValidationError

logger = logging.getLogger(__name__)

CONTAINER_ID_FILE = "container.id"
CREDENTIALS_FILE = "moodle.txt"
IMAGE_CONFIG_FILE = "image.docker"


class FileStateStore:
    """Key=value file persistence for the container handle and credentials."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    def _ensure_data_dir(self) -> None:
        if self.data_dir.exists() and not self.data_dir.is_dir():
            raise StateError(f"Data path exists but is not a directory: {self.data_dir}")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateError(f"Failed to create data directory {self.data_dir}: {e}") from e

    def _write(self, filename: str, content: str) -> None:
        self._ensure_data_dir()
        path = self._path(filename)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StateError(f"Failed to write {path}: {e}") from e
        logger.debug(f"Wrote {path}")

    def _read(self, filename: str) -> str:
        path = self._path(filename)
        if not path.exists():
            raise StateNotFoundError(f"{path} does not exist")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read {path}: {e}") from e

    def _delete(self, filename: str) -> None:
        path = self._path(filename)
        if not path.exists():
            return
        try:
            path.unlink()
        except OSError as e:
            raise StateError(f"Failed to delete {path}: {e}") from e

    # Container handle

    def save_container_id(self, container_id: str) -> None:
        validate_container_id(container_id)
        self._write(CONTAINER_ID_FILE, container_id)

    def load_container_id(self) -> str:
        """
        Read the persisted container ID.

        Raises:
            StateNotFoundError: If no container ID has been saved
            StateError: If the file is empty, unreadable or holds an invalid ID
        """
        container_id = self._read(CONTAINER_ID_FILE).strip()
        if not container_id:
            raise StateError(f"{self._path(CONTAINER_ID_FILE)} is empty")
        try:
            validate_container_id(container_id)
        except ValidationError as e:
            raise StateError(f"Container ID stored in {self._path(CONTAINER_ID_FILE)} is invalid: {e}") from e
        return container_id

    def container_id_exists(self) -> bool:
        return self._path(CONTAINER_ID_FILE).exists()

    def delete_container_id(self) -> None:
        self._delete(CONTAINER_ID_FILE)

    # Credentials

    def save_credentials(self, password: str, url: str) -> None:
        """
        Persist credentials as key=value lines.

        Raises:
            ValidationError: If the password or URL is empty
            StateError: If the file cannot be written
        """
        if not password:
            raise ValidationError("password", "password cannot be empty")
        if not url:
            raise ValidationError("url", "url cannot be empty")
        self._write(CREDENTIALS_FILE, f"password={password}\nurl={url}\n")

    def load_credentials(self) -> Dict[str, str]:
        """
        Read the stored key=value credential entries.

        Malformed lines are skipped with a warning.

        Raises:
            StateNotFoundError: If no credentials have been saved
            StateError: If the file is empty or has no valid entries
        """
        path = self._path(CREDENTIALS_FILE)
        content = self._read(CREDENTIALS_FILE)
        if not content:
            raise StateError(f"{path} is empty")

        entries: Dict[str, str] = {}
        for line_num, line in enumerate(content.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            key, sep, value = line.partition("=")
            if not sep:
                logger.warning(f"Skipping malformed line {line_num} in {path}")
                continue
            key = key.strip()
            if not key:
                logger.warning(f"Skipping line {line_num} with empty key in {path}")
                continue
            entries[key] = value.strip()

        if not entries:
            raise StateError(f"No valid credential entries found in {path}")
        return entries

    def credentials_exist(self) -> bool:
        return self._path(CREDENTIALS_FILE).exists()

    def delete_credentials(self) -> None:
        self._delete(CREDENTIALS_FILE)

    # Image configuration

    def image_search_paths(self) -> List[Path]:
        """Locations checked for image.docker, in order."""
        paths = [
            self._path(IMAGE_CONFIG_FILE),
            Path(".") / IMAGE_CONFIG_FILE,
            Path("..") / IMAGE_CONFIG_FILE,
            Path.cwd() / IMAGE_CONFIG_FILE,
        ]
        if sys.argv and sys.argv[0]:
            paths.append(Path(sys.argv[0]).resolve().parent / IMAGE_CONFIG_FILE)
        return paths

    def load_image_name(self) -> str:
        """
        Find the first valid image name in the image.docker search path.

        Raises:
            StateNotFoundError: If no search location holds a valid image name
        """
        search_paths = self.image_search_paths()
        last_error: Optional[str] = None
        for path in search_paths:
            try:
                image_name = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                last_error = str(e)
                continue
            if not image_name:
                last_error = f"{path} is empty"
                continue
            try:
                validate_image_name(image_name)
            except ValidationError as e:
                last_error = f"image name in {path} is invalid: {e}"
                continue
            logger.info(f"Loaded image name '{image_name}' from {path}")
            return image_name

        raise StateNotFoundError(
            f"No image configuration found in {len(search_paths)} searched paths (last error: {last_error})"
        )

    def cleanup(self) -> None:
        """Delete the container ID and credentials files."""
        errors = []
        for delete in (self.delete_container_id, self.delete_credentials):
            try:
                delete()
            except StateError as e:
                errors.append(str(e))
        if errors:
            raise StateError("File cleanup failed: " + "; ".join(errors))


class CredentialStore:
    """Credential access with defaults when nothing has been stored yet."""

    def __init__(self, store: FileStateStore):
        self.store = store

    def load(self) -> Credentials:
        """
        Load stored credentials.

        Returns:
            The stored credentials, or defaults if none have been saved

        Raises:
            StateError: If the credentials file exists but cannot be parsed
        """
        if not self.store.credentials_exist():
            return Credentials.default()
        entries = self.store.load_credentials()
        credentials = Credentials.default()
        if "password" in entries:
            credentials.password = entries["password"]
        if "url" in entries:
            credentials.url = entries["url"]
        return credentials

    def save(self, credentials: Credentials) -> None:
        self.store.save_credentials(credentials.password, credentials.url)

    def update(self, password: str, url: str) -> None:
        self.save(Credentials(username=DEFAULT_USERNAME, password=password, url=url))

    def clear(self) -> None:
        self.store.delete_credentials()

    def exists(self) -> bool:
        return self.store.credentials_exist()
