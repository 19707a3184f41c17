"""Extracts the generated admin credentials from Moodle container logs."""

import re

from moodle_manager.models.credentials import Credentials

# The image prints either form depending on its version
PASSWORD_PATTERN = re.compile(r"(?:Generated admin password:|Password:)\s*(.+)")
URL_PATTERN = re.compile(r"Moodle is available at:\s*(.+)")


class LogParser:
    """Pattern matcher over accumulated container log text."""

    def __init__(self):
        self.password_pattern = PASSWORD_PATTERN
        self.url_pattern = URL_PATTERN

    def extract_credentials(self, logs: str) -> Credentials:
        """
        Search log text for the admin password and site URL.

        The search is pure: more log text can only add fields, never
        remove them. Missing fields come back as empty strings.

        Args:
            logs: Container log output, stdout and stderr combined

        Returns:
            Credentials with whatever was found
        """
        credentials = Credentials(password="", url="")

        match = self.password_pattern.search(logs)
        if match:
            credentials.password = match.group(1).strip()

        match = self.url_pattern.search(logs)
        if match:
            credentials.url = match.group(1).strip()

        return credentials
