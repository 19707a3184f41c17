"""
Tests for persisted launcher state.
"""

import os
from unittest.mock import patch

import pytest

from moodle_manager.models.credentials import DEFAULT_URL
from moodle_manager.services.errors import StateError, StateNotFoundError, ValidationError
from moodle_manager.services.state_store import (
    CONTAINER_ID_FILE,
    CREDENTIALS_FILE,
    IMAGE_CONFIG_FILE,
    CredentialStore,
    FileStateStore,
)

CONTAINER_ID = "4f2a0e7b1c9d8e7f6a5b4c3d2e1f"


@pytest.fixture
def store(tmp_path):
    return FileStateStore(tmp_path / "data")


class TestContainerId:
    """Tests for container ID persistence."""

    def test_round_trip(self, store):
        store.save_container_id(CONTAINER_ID)

        assert store.container_id_exists() is True
        assert store.load_container_id() == CONTAINER_ID
        assert (store.data_dir / CONTAINER_ID_FILE).read_text() == CONTAINER_ID

    def test_creates_data_dir(self, store):
        assert not store.data_dir.exists()
        store.save_container_id(CONTAINER_ID)
        assert store.data_dir.is_dir()

    def test_rejects_invalid_id(self, store):
        with pytest.raises(ValidationError):
            store.save_container_id("short")
        assert store.container_id_exists() is False

    def test_missing(self, store):
        with pytest.raises(StateNotFoundError):
            store.load_container_id()

    def test_empty_file(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CONTAINER_ID_FILE).write_text("  \n")
        with pytest.raises(StateError):
            store.load_container_id()

    def test_corrupted_id(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CONTAINER_ID_FILE).write_text("abc")
        with pytest.raises(StateError):
            store.load_container_id()

    def test_delete_is_idempotent(self, store):
        store.delete_container_id()
        store.save_container_id(CONTAINER_ID)
        store.delete_container_id()
        assert store.container_id_exists() is False

    def test_data_path_is_a_file(self, tmp_path):
        data_file = tmp_path / "data"
        data_file.write_text("")
        with pytest.raises(StateError):
            FileStateStore(data_file).save_container_id(CONTAINER_ID)


class TestCredentialsFile:
    """Tests for the key=value credentials file."""

    def test_format(self, store):
        store.save_credentials("s3cret", "http://localhost:8080")

        content = (store.data_dir / CREDENTIALS_FILE).read_text()
        assert content == "password=s3cret\nurl=http://localhost:8080\n"

    def test_round_trip(self, store):
        store.save_credentials("s3cret", "http://localhost:8080")
        assert store.load_credentials() == {"password": "s3cret", "url": "http://localhost:8080"}

    def test_value_may_contain_equals(self, store):
        store.save_credentials("a=b=c", "http://localhost:8080/?x=1")
        assert store.load_credentials()["password"] == "a=b=c"

    def test_rejects_empty_values(self, store):
        with pytest.raises(ValidationError):
            store.save_credentials("", "http://localhost:8080")
        with pytest.raises(ValidationError):
            store.save_credentials("s3cret", "")

    def test_skips_malformed_lines(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CREDENTIALS_FILE).write_text("garbage\n=novalue\npassword=ok\n")
        assert store.load_credentials() == {"password": "ok"}

    def test_no_valid_entries(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CREDENTIALS_FILE).write_text("garbage\n")
        with pytest.raises(StateError):
            store.load_credentials()

    def test_empty_file(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CREDENTIALS_FILE).write_text("")
        with pytest.raises(StateError):
            store.load_credentials()

    def test_cleanup(self, store):
        store.save_container_id(CONTAINER_ID)
        store.save_credentials("s3cret", "http://localhost:8080")
        store.cleanup()

        assert store.container_id_exists() is False
        assert store.credentials_exist() is False


class TestImageName:
    """Tests for image.docker lookup."""

    def test_data_dir_first(self, store, tmp_path):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / IMAGE_CONFIG_FILE).write_text("moodle/custom:1.0\n")
        assert store.load_image_name() == "moodle/custom:1.0"

    def test_working_directory(self, store, tmp_path):
        workdir = tmp_path / "work"
        workdir.mkdir()
        (workdir / IMAGE_CONFIG_FILE).write_text("moodle/from-cwd:2.0")

        cwd = os.getcwd()
        os.chdir(workdir)
        try:
            assert store.load_image_name() == "moodle/from-cwd:2.0"
        finally:
            os.chdir(cwd)

    def test_skips_invalid_entries(self, store, tmp_path):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / IMAGE_CONFIG_FILE).write_text("ab")
        fallback = tmp_path / "fallback" / IMAGE_CONFIG_FILE
        fallback.parent.mkdir()
        fallback.write_text("moodle/fallback:3.0")

        with patch.object(
            FileStateStore,
            "image_search_paths",
            return_value=[store.data_dir / IMAGE_CONFIG_FILE, fallback],
        ):
            assert store.load_image_name() == "moodle/fallback:3.0"

    def test_not_found(self, store, tmp_path):
        with patch.object(FileStateStore, "image_search_paths", return_value=[tmp_path / "missing"]):
            with pytest.raises(StateNotFoundError):
                store.load_image_name()


class TestCredentialStore:
    """Tests for CredentialStore defaults."""

    def test_defaults_when_missing(self, store):
        credentials = CredentialStore(store).load()

        assert credentials.username == "admin"
        assert credentials.password == ""
        assert credentials.url == DEFAULT_URL

    def test_update_and_load(self, store):
        credential_store = CredentialStore(store)
        credential_store.update("s3cret", "http://localhost:8080")

        credentials = credential_store.load()
        assert credentials.password == "s3cret"
        assert credentials.is_complete() is True
        assert credential_store.exists() is True

    def test_missing_url_keeps_default(self, store):
        store.data_dir.mkdir(parents=True)
        (store.data_dir / CREDENTIALS_FILE).write_text("password=s3cret\n")

        credentials = CredentialStore(store).load()
        assert credentials.url == DEFAULT_URL

    def test_clear(self, store):
        credential_store = CredentialStore(store)
        credential_store.update("s3cret", "http://localhost:8080")
        credential_store.clear()
        credential_store.clear()

        assert credential_store.exists() is False
