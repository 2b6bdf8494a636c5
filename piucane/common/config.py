"""
Centralized Configuration for PiùCane Gamification

This module provides a unified configuration system for the gamification
engine. It handles configuration from environment variables, config files,
and defaults, with proper type checking and validation.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from piucane.common.exceptions import ConfigurationError

# Known identifiers; kept in sync with piucane.gamification.models
SOURCE_TYPES = ("mission", "badge", "streak", "special_event", "daily_bonus")
DIFFICULTY_LEVELS = ("easy", "medium", "hard", "adaptive")
TIER_ORDER = ("easy", "medium", "hard")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Configure logging
logger = logging.getLogger(__name__)


class XPConfig(BaseModel):
    """Multiplier tables used by the XP award engine"""
    source_multipliers: Dict[str, float] = Field(default_factory=lambda: {
        "mission": 1.0,
        "badge": 1.2,
        "streak": 1.5,
        "special_event": 2.0,
        "daily_bonus": 0.8,
    })
    difficulty_multipliers: Dict[str, float] = Field(default_factory=lambda: {
        "easy": 0.8,
        "medium": 1.0,
        "hard": 1.5,
        "adaptive": 1.2,
    })
    premium_multiplier: float = 1.5
    weekend_multiplier: float = 1.2
    happy_hour_multiplier: float = 1.1
    happy_hour_start: int = 18
    happy_hour_end: int = 20  # inclusive
    event_multiplier: float = 1.0

    @field_validator('source_multipliers')
    @classmethod
    def validate_source_multipliers(cls, v):
        """Every source type needs a positive multiplier"""
        known = set(SOURCE_TYPES)
        missing = known - set(v)
        if missing:
            raise ValueError(f"Missing source multipliers: {sorted(missing)}")
        unknown = set(v) - known
        if unknown:
            raise ValueError(f"Unknown source types: {sorted(unknown)}")
        if any(m <= 0 for m in v.values()):
            raise ValueError("Source multipliers must be positive")
        return v

    @field_validator('difficulty_multipliers')
    @classmethod
    def validate_difficulty_multipliers(cls, v):
        """Every difficulty tier needs a positive multiplier"""
        known = set(DIFFICULTY_LEVELS)
        missing = known - set(v)
        if missing:
            raise ValueError(f"Missing difficulty multipliers: {sorted(missing)}")
        if any(m <= 0 for m in v.values()):
            raise ValueError("Difficulty multipliers must be positive")
        return v

    @model_validator(mode='after')
    def validate_happy_hour(self):
        """Happy hour is a window of local hours"""
        if not (0 <= self.happy_hour_start <= self.happy_hour_end <= 23):
            raise ValueError(
                f"Invalid happy hour window: {self.happy_hour_start}-{self.happy_hour_end}"
            )
        return self


class DDAConfig(BaseModel):
    """Dynamic difficulty adjustment configuration"""
    cooldown_hours: float = 24.0
    history_window: int = 10
    stagnant_after_days: float = 3.0
    history_max: int = 50
    history_keep: int = 25
    decrease_threshold: float = 0.4
    maintain_min: float = 0.4
    maintain_max: float = 0.7
    increase_threshold: float = 0.7
    min_difficulty: str = "easy"
    max_difficulty: str = "hard"

    @field_validator('min_difficulty', 'max_difficulty')
    @classmethod
    def validate_tier(cls, v):
        """Bounds must be fixed tiers"""
        if v not in TIER_ORDER:
            raise ValueError(f"Difficulty bound must be one of {list(TIER_ORDER)}")
        return v

    @model_validator(mode='after')
    def validate_thresholds(self):
        """Thresholds must partition [0, 1] into decrease / maintain / increase bands"""
        if not (0 <= self.decrease_threshold <= self.maintain_min
                <= self.maintain_max <= self.increase_threshold <= 1):
            raise ValueError("DDA thresholds must satisfy decrease <= maintain_min <= maintain_max <= increase")
        if self.decrease_threshold >= self.increase_threshold:
            raise ValueError("DDA decrease threshold must be below the increase threshold")
        if TIER_ORDER.index(self.min_difficulty) > TIER_ORDER.index(self.max_difficulty):
            raise ValueError("min_difficulty must not be above max_difficulty")
        if not (0 < self.history_keep <= self.history_max):
            raise ValueError("history_keep must be positive and not above history_max")
        return self


class StorageConfig(BaseModel):
    """Profile / mission / reward store configuration"""
    backend: str = "memory"
    key_prefix: str = "piucane:"
    lock_timeout: float = 5.0
    mission_history_retention: int = 100

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        """Validate storage backend"""
        valid_backends = ['memory', 'redis']
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid storage backend: {v}. Must be one of {valid_backends}")
        return v.lower()


class RedisConfig(BaseModel):
    """Connection settings for the Redis storage backend"""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    use_ssl: bool = False
    connection_timeout: int = 10

    @property
    def connection_string(self) -> str:
        """URL form accepted by ``redis.asyncio.Redis.from_url``"""
        scheme = "rediss" if self.use_ssl else "redis"
        credentials = f":{self.password}@" if self.password else ""
        return f"{scheme}://{credentials}{self.host}:{self.port}/{self.db}"


class LoggingConfig(BaseModel):
    """Output settings for the ``piucane`` logger"""
    level: str = "INFO"
    json_output: bool = False
    file_path: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Accept standard level names in any case"""
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {v!r}, expected one of {list(LOG_LEVELS)}")
        return level


class AppConfig(BaseSettings):
    """Main application configuration"""
    model_config = SettingsConfigDict(
        env_prefix="PIUCANE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "PiùCane Gamification"
    version: str = "1.0.0"
    xp: XPConfig = Field(default_factory=XPConfig)
    dda: DDAConfig = Field(default_factory=DDAConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from the config file
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class ConfigLoader:
    """
    Builds the ``AppConfig`` once and caches it.

    Values come from the model defaults, then the optional YAML or JSON
    file named by ``config_path`` or ``CONFIG_PATH``, then ``PIUCANE_*``
    environment variables, each layer overriding the one before.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: YAML or JSON file with per-deployment overrides
        """
        self.config_path = config_path or os.environ.get("CONFIG_PATH")
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """
        Return the cached config, building it on first call.

        Raises:
            ConfigurationError: If the config file cannot be used
            pydantic.ValidationError: If a value fails validation
        """
        if self._config is not None:
            return self._config

        file_config: Dict[str, Any] = {}
        if self.config_path:
            file_config = self._load_from_file(self.config_path)

        self._config = AppConfig(**file_config)
        return self._config

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Read the override file into a dict; a missing file means no overrides.

        Raises:
            ConfigurationError: If the file cannot be parsed or has an unsupported format
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        suffix = path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(f"Unsupported config file format: {suffix}", str(path))

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f) if suffix == '.json' else yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            raise ConfigurationError(f"Cannot read {path}", str(path)) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level", str(path))
        return data


# Loaded at import so every module sees the same settings
config_loader = ConfigLoader()
config = config_loader.load()


def get_config() -> AppConfig:
    """The process-wide configuration."""
    return config


def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Reload the configuration.

    Args:
        config_path: Path to config file

    Returns:
        Reloaded configuration
    """
    global config_loader, config
    config_loader = ConfigLoader(config_path)
    config = config_loader.load()
    return config
