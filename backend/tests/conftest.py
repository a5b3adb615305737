"""Shared test fixtures and configuration for backend tests."""
import pytest

from app.chat.coordinator import SessionCoordinator
from app.chat.manager import manager
from app.config import (
    AdminSecrets,
    AdminSettings,
    AppSettings,
    ChatSettings,
    Secrets,
    ServerSettings,
    UploadSettings,
    set_config,
)
from app.files.service import FileStorageService

ADMIN_NAME = "moderator"
ADMIN_SECRET = "s3cret-pass"


def make_settings(tmp_path, **chat) -> AppSettings:
    return AppSettings(
        server=ServerSettings(trust_forwarded_for=True),
        chat=ChatSettings(**chat),
        admin=AdminSettings(name=ADMIN_NAME, max_failed_attempts=3),
        uploads=UploadSettings(directory=str(tmp_path / "uploads"), max_size_bytes=1024),
        secrets=Secrets(admin=AdminSecrets(secret=ADMIN_SECRET)),
    )


@pytest.fixture(autouse=True)
def test_config(tmp_path):
    """Install deterministic settings and fresh singletons for every test."""
    settings = make_settings(tmp_path)
    set_config(settings)
    SessionCoordinator.reset_instance()
    FileStorageService.reset_instance()
    yield settings
    manager.active_connections.clear()
    SessionCoordinator.reset_instance()
    FileStorageService.reset_instance()
    set_config(None)


@pytest.fixture
def coordinator(test_config):
    """A coordinator with no transport attached."""
    return SessionCoordinator(test_config)
