"""Logging configuration for the launcher process."""

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "moodle.log"


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Configure root logging for the application.

    Args:
        level: Log level name (e.g. "INFO", "DEBUG")
        log_dir: Optional directory; when set, logs are also written to moodle.log there

    Returns:
        Path of the log file if a file handler was installed, None otherwise
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_path = None

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / LOG_FILE_NAME
            handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
        except OSError as e:
            # Fall back to console-only logging
            logging.getLogger(__name__).warning(f"Could not open log file in {log_dir}: {e}")
            log_path = None

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return log_path


def mask_password(password: str) -> str:
    """
    Mask a password for log output.

    Keeps the first and last two characters of passwords longer than four
    characters, e.g. "Sw****h!".
    """
    if len(password) > 4:
        return f"{password[:2]}****{password[-2:]}"
    return "****"
