"""
Credential models.

Credentials are discovered from the container logs on first run and
persisted so that later runs only need to confirm the site is reachable.
"""

from typing import Dict

from pydantic import BaseModel, Field

DEFAULT_USERNAME = "admin"
DEFAULT_URL = "http://localhost:8080"


class Credentials(BaseModel):
    """Moodle admin login credentials."""
    username: str = Field(default=DEFAULT_USERNAME, description="Admin username")
    password: str = Field(default="", description="Generated admin password")
    url: str = Field(default="", description="URL the site is served on")

    def is_complete(self) -> bool:
        """Both the password and the URL are known."""
        return bool(self.password) and bool(self.url)

    def has_password(self) -> bool:
        return bool(self.password)

    def has_url(self) -> bool:
        return bool(self.url)

    def to_dict(self) -> Dict[str, str]:
        return {
            "username": self.username,
            "password": self.password,
            "url": self.url,
        }

    @classmethod
    def default(cls) -> "Credentials":
        """Credentials shown before anything has been discovered."""
        return cls(username=DEFAULT_USERNAME, password="", url=DEFAULT_URL)
