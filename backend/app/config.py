"""roomchat application configuration.

Loads settings from a single YAML file:
  * roomchat.settings.yaml: server, logging and chat limits

The path can be overridden with the ROOMCHAT_SETTINGS environment variable
or by passing ``settings_path`` to :func:`load_config`. A missing file is not
an error; every field has a default.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomchat.settings.yaml")
SETTINGS_ENV_VAR = "ROOMCHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class ChatSettings(BaseModel):
    """Limits for the in-memory messaging core."""
    room_history_limit:       int = Field(default=100, ge=1)
    dm_history_limit:         int = Field(default=100, ge=1)
    outbound_queue_size:      int = Field(default=256, ge=1)
    max_connections_per_room: int = Field(default=0, ge=0)  # 0 = no limit
    system_username:          str = "System"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings from YAML into an *AppConfig* object."""
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    settings_data = _load_yaml(Path(settings_path))

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, room_history_limit=%s, dm_history_limit=%s)",
        config.server.host,
        config.server.port,
        config.chat.room_history_limit,
        config.chat.dm_history_limit,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config. Primarily used by tests."""
    global _config
    _config = None
