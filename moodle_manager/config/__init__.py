"""Configuration module"""

from .launcher_settings import LauncherSettings, get_launcher_settings
from .logging import setup_logging, mask_password

__all__ = [
    # Environment settings
    "LauncherSettings",
    "get_launcher_settings",
    # Logging
    "setup_logging",
    "mask_password",
]
