"""Room chat application configuration.

Loads settings from two YAML files:
  * roomchat.settings.yaml: non-secret configuration
  * roomchat.secrets.yaml: secrets (never committed)

Either path can be overridden with the ROOMCHAT_SETTINGS / ROOMCHAT_SECRETS
environment variables or passed explicitly to ``load_config``.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomchat.settings.yaml")
SECRETS_FILE  = Path("roomchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AdminSecrets(BaseModel):
    secret: Optional[str] = None


class Secrets(BaseModel):
    admin: AdminSecrets = Field(default_factory=AdminSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:                str  = "0.0.0.0"
    port:                int  = 8000
    trust_forwarded_for: bool = False


class ChatSettings(BaseModel):
    history_capacity:     int = 500
    max_nickname_length:  int = 32
    max_room_name_length: int = 64
    max_message_length:   int = 2000

    @field_validator("history_capacity")
    @classmethod
    def _capacity_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("history_capacity must be at least 1")
        return value


class AdminSettings(BaseModel):
    """Administrator identity and moderation policy."""
    name:                   str  = "admin"
    allow_unban:            bool = True
    ban_list_audience:      Literal["admins", "everyone"] = "admins"
    max_failed_attempts:    int  = 5
    failure_window_seconds: float = 300.0
    warning_text:           str  = "You have been warned by an administrator."


class UploadSettings(BaseModel):
    directory:      str = "uploads"
    max_size_bytes: int = 20 * 1024 * 1024
    url_prefix:     str = "/files/download"


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    admin:   AdminSettings   = Field(default_factory=AdminSettings)
    uploads: UploadSettings  = Field(default_factory=UploadSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


def _resolve_upload_dir(app_settings: AppSettings, settings_path: Path) -> None:
    """Anchor a relative upload directory at the settings file's directory."""
    directory = Path(app_settings.uploads.directory)
    if directory.is_absolute() or not settings_path.exists():
        return
    app_settings.uploads.directory = str(settings_path.resolve().parent / directory)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path or os.environ.get("ROOMCHAT_SETTINGS") or SETTINGS_FILE)
    secrets_path  = Path(secrets_path or os.environ.get("ROOMCHAT_SECRETS") or SECRETS_FILE)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    _resolve_upload_dir(app_settings, settings_path)
    if not app_settings.secrets.admin.secret:
        logger.warning("No admin secret configured; administrator login is disabled.")
    logger.info(
        "Settings loaded (server=%s:%s, history_capacity=%d, admin=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.chat.history_capacity,
        app_settings.admin.name,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""
    global _config
    _config = config
