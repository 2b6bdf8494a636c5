"""
Tests for configuration loading and validation.
"""

import pytest
from pydantic import ValidationError

from piucane.common.exceptions import ConfigurationError
from piucane.common.config import (
    AppConfig, ConfigLoader, DDAConfig, LoggingConfig, StorageConfig, XPConfig
)


def test_defaults():
    config = AppConfig()
    assert config.xp.source_multipliers["special_event"] == 2.0
    assert config.xp.difficulty_multipliers["adaptive"] == 1.2
    assert config.dda.cooldown_hours == 24.0
    assert config.dda.history_window == 10
    assert config.storage.backend == "memory"


@pytest.mark.parametrize("kwargs", [
    {"happy_hour_start": 21, "happy_hour_end": 20},
    {"happy_hour_end": 24},
    {"source_multipliers": {"mission": 1.0}},
    {"difficulty_multipliers": {"easy": 0.8, "medium": 1.0, "hard": 0.0, "adaptive": 1.2}},
])
def test_invalid_xp_config(kwargs):
    with pytest.raises(ValidationError):
        XPConfig(**kwargs)


@pytest.mark.parametrize("kwargs", [
    {"decrease_threshold": 0.8},
    {"maintain_min": 0.3},
    {"increase_threshold": 1.5, "maintain_max": 0.7},
    {"decrease_threshold": 0.5, "maintain_min": 0.5, "maintain_max": 0.5, "increase_threshold": 0.5},
    {"min_difficulty": "hard", "max_difficulty": "easy"},
    {"max_difficulty": "adaptive"},
    {"history_keep": 60},
])
def test_invalid_dda_config(kwargs):
    with pytest.raises(ValidationError):
        DDAConfig(**kwargs)


def test_invalid_storage_and_logging():
    with pytest.raises(ValidationError):
        StorageConfig(backend="mongo")
    with pytest.raises(ValidationError):
        LoggingConfig(level="LOUD")
    assert StorageConfig(backend="REDIS").backend == "redis"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PIUCANE_XP__PREMIUM_MULTIPLIER", "2.0")
    monkeypatch.setenv("PIUCANE_STORAGE__BACKEND", "redis")

    config = AppConfig()

    assert config.xp.premium_multiplier == 2.0
    assert config.storage.backend == "redis"


def test_yaml_file(tmp_path, monkeypatch):
    path = tmp_path / "gamification.yaml"
    path.write_text(
        "dda:\n"
        "  cooldown_hours: 12\n"
        "xp:\n"
        "  event_multiplier: 1.5\n",
        encoding="utf-8"
    )

    config = ConfigLoader(str(path)).load()
    assert config.dda.cooldown_hours == 12
    assert config.xp.event_multiplier == 1.5

    monkeypatch.setenv("PIUCANE_DDA__COOLDOWN_HOURS", "6")
    config = ConfigLoader(str(path)).load()
    assert config.dda.cooldown_hours == 6
    assert config.xp.event_multiplier == 1.5


def test_json_file(tmp_path):
    path = tmp_path / "gamification.json"
    path.write_text('{"storage": {"key_prefix": "test:"}}', encoding="utf-8")
    assert ConfigLoader(str(path)).load().storage.key_prefix == "test:"


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = ConfigLoader(str(tmp_path / "missing.yaml")).load()
    assert config.dda.cooldown_hours == 24.0


def test_invalid_file_values_raise(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("dda:\n  decrease_threshold: 0.9\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        ConfigLoader(str(path)).load()


def test_unparseable_file_raises_configuration_error(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError) as exc_info:
        ConfigLoader(str(path)).load()
    assert exc_info.value.config_key == str(path)


def test_unsupported_file_format_raises(tmp_path):
    path = tmp_path / "gamification.toml"
    path.write_text("[dda]\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        ConfigLoader(str(path)).load()
