"""
Launcher Settings

Runtime settings for the Moodle launcher loaded from environment variables
(prefixed with MOODLE_) and an optional .env file.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_DATA_DIR = Path.home() / ".moodle-prototype-manager"


class LauncherSettings(BaseSettings):
    """Launcher settings from environment variables."""

    # Image
    IMAGE_NAME: Optional[str] = None
    DEFAULT_IMAGE_NAME: str = "wenkhairu/moodle-prototype:502-stable"

    # Storage
    DATA_DIR: Path = DEFAULT_DATA_DIR

    # Container
    PORT_MAPPING: str = "8080:8080"
    SERVICE_URL: str = "http://localhost:8080"
    DOCKER_BINARY: Optional[str] = None
    COMMAND_TIMEOUT: int = 60

    # Readiness polling
    POLL_INTERVAL: float = 2.0
    BACKOFF_INTERVAL: float = 5.0
    MAX_LOG_ERRORS: int = 5
    SUBSEQUENT_TIMEOUT: float = 600.0
    PROBE_TIMEOUT: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[Path] = None

    # HTTP server
    HOST: str = "127.0.0.1"
    PORT: int = 8765
    CORS_ORIGINS: str = "*"

    @field_validator("IMAGE_NAME", "DOCKER_BINARY", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        """Treat empty strings as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).upper()

    @field_validator("PORT_MAPPING")
    @classmethod
    def validate_port_mapping(cls, v: str) -> str:
        """Require a host:container port pair."""
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"PORT_MAPPING must look like 'host:container', got {v!r}")
        return v

    class Config:
        env_prefix = "MOODLE_"
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_launcher_settings() -> LauncherSettings:
    """Get cached launcher settings instance."""
    return LauncherSettings()
