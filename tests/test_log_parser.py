"""
Tests for credential extraction from container logs.
"""

from moodle_manager.services.log_parser import LogParser

SAMPLE_LOGS = """\
moodle 10:02:11.42 INFO  ==> Configuring Moodle
moodle 10:04:55.01 INFO  ==> Generated admin password: Xk3!vR9pQ2
moodle 10:04:55.02 INFO  ==> Moodle is available at: http://localhost:8080
"""


class TestLogParser:
    """Tests for LogParser.extract_credentials."""

    def test_empty_logs(self):
        credentials = LogParser().extract_credentials("")

        assert credentials.password == ""
        assert credentials.url == ""
        assert credentials.is_complete() is False

    def test_complete_logs(self):
        credentials = LogParser().extract_credentials(SAMPLE_LOGS)

        assert credentials.password == "Xk3!vR9pQ2"
        assert credentials.url == "http://localhost:8080"
        assert credentials.username == "admin"
        assert credentials.is_complete() is True

    def test_password_only(self):
        credentials = LogParser().extract_credentials("Password: abc123\n")

        assert credentials.has_password() is True
        assert credentials.has_url() is False
        assert credentials.is_complete() is False

    def test_url_only(self):
        credentials = LogParser().extract_credentials("Moodle is available at: http://localhost:8080\n")

        assert credentials.has_url() is True
        assert credentials.has_password() is False
        assert credentials.is_complete() is False

    def test_values_are_trimmed(self):
        credentials = LogParser().extract_credentials(
            "Password:    s3cret   \r\nMoodle is available at:   http://127.0.0.1:8080  \n"
        )

        assert credentials.password == "s3cret"
        assert credentials.url == "http://127.0.0.1:8080"

    def test_more_logs_never_remove_fields(self):
        parser = LogParser()
        partial = "Generated admin password: first\n"
        grown = partial + "unrelated line\nMoodle is available at: http://localhost:8080\n"

        before = parser.extract_credentials(partial)
        after = parser.extract_credentials(grown)

        assert before.password == after.password == "first"
        assert after.is_complete() is True
