"""Tests for YAML config loading."""

import pytest
from pydantic import ValidationError

from app.config import SETTINGS_ENV_VAR, AppConfig, get_config, load_config, reset_config


def test_missing_file_uses_defaults(tmp_path):
    """A missing settings file yields the default config."""
    cfg = load_config(settings_path=tmp_path / "absent.yaml")
    assert cfg == AppConfig()
    assert cfg.chat.room_history_limit == 100
    assert cfg.chat.dm_history_limit == 100
    assert cfg.chat.system_username == "System"


def test_values_read_from_yaml(tmp_path):
    """Values in the settings file override defaults section by section."""
    settings_file = tmp_path / "roomchat.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 8080\n"
        "logging:\n"
        "  level: DEBUG\n"
        "chat:\n"
        "  room_history_limit: 20\n"
        "  max_connections_per_room: 5\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.server.port == 8080
    assert cfg.server.host == "0.0.0.0"
    assert cfg.logging.level == "debug"
    assert cfg.chat.room_history_limit == 20
    assert cfg.chat.dm_history_limit == 100
    assert cfg.chat.max_connections_per_room == 5


def test_empty_file_uses_defaults(tmp_path):
    settings_file = tmp_path / "roomchat.settings.yaml"
    settings_file.write_text("", encoding="utf-8")
    assert load_config(settings_path=settings_file) == AppConfig()


def test_env_var_selects_settings_file(tmp_path, monkeypatch):
    """ROOMCHAT_SETTINGS points get_config at another file."""
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("chat:\n  dm_history_limit: 7\n", encoding="utf-8")
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(settings_file))

    reset_config()
    assert get_config().chat.dm_history_limit == 7
    # Cached until reset
    assert get_config() is get_config()


def test_invalid_history_limit_rejected(tmp_path):
    settings_file = tmp_path / "roomchat.settings.yaml"
    settings_file.write_text("chat:\n  room_history_limit: 0\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)


def test_unknown_log_level_rejected(tmp_path):
    settings_file = tmp_path / "roomchat.settings.yaml"
    settings_file.write_text("logging:\n  level: chatty\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)
