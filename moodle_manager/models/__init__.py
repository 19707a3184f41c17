"""Data models"""

from .credentials import Credentials, DEFAULT_USERNAME, DEFAULT_URL

__all__ = [
    "Credentials", "DEFAULT_USERNAME", "DEFAULT_URL",
]
