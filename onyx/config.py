"""
User settings: the pydantic `Settings` schema and its JSON persistence.
"""

import time
import logging
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import (
    DEFAULT_CONCURRENCY, DEFAULT_DOWNLOAD_DIR, DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT,
    MAX_CONCURRENCY, MIN_CONCURRENCY
)

AUDIO_FORMATS: List[str] = ['mp3', 'ogg', 'wav', 'm4a']
LOG_LEVELS: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def validate_quality(value: str) -> str:
    """Accepts 'max', 'mid-max' or a positive pixel height such as '720'."""
    normalized = str(value).strip().lower().rstrip('p')
    if normalized in ('max', 'mid-max'):
        return normalized
    if normalized.isdigit() and int(normalized) > 0:
        return normalized
    raise ValueError(f"'{value}' is not a valid quality. Use 'max', 'mid-max' or a height like '720'.")


class Settings(BaseModel):
    """Persisted user settings. Values set by hand in the JSON file are validated on load."""
    download_path: Path = Field(default_factory=lambda: DEFAULT_DOWNLOAD_DIR)
    show_debug_command: bool = False
    max_concurrent_downloads: int = Field(default=DEFAULT_CONCURRENCY, ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)
    default_quality: str = 'max'
    default_audio_format: str = 'mp3'
    server_host: str = DEFAULT_SERVER_HOST
    server_port: int = Field(default=DEFAULT_SERVER_PORT, ge=1, le=65535)
    open_browser: bool = True
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"'{value}' is not a log level; use one of {', '.join(LOG_LEVELS)}.")
        return level

    @field_validator('default_quality')
    @classmethod
    def validate_default_quality(cls, value: str) -> str:
        return validate_quality(value)

    @field_validator('default_audio_format')
    @classmethod
    def validate_default_audio_format(cls, value: str) -> str:
        lower_value = value.lower()
        if lower_value not in AUDIO_FORMATS:
            raise ValueError(f"'{value}' is not a supported audio format. Must be one of {AUDIO_FORMATS}.")
        return lower_value

    @field_validator('download_path', mode='before')
    @classmethod
    def expand_download_path(cls, value) -> Path:
        """Expands '~' so a hand-edited config behaves like the shell."""
        return Path(value).expanduser()


class ConfigManager:
    """Reads and writes `Settings` as a JSON document."""

    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: Location of the JSON settings file; its directory is created.
        """
        self.config_path = Path(config_path)
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Returns the stored settings, falling back to defaults.

        A missing file is created with the defaults. A file that is not valid
        JSON or fails validation is moved aside (`config.<timestamp>.bak`) so
        the user can recover it, and the defaults are used for this run.
        """
        if not self.config_path.exists():
            self.logger.info(f"No settings at {self.config_path}; writing defaults.")
            settings = Settings()
            self.save(settings)
            return settings

        try:
            return Settings.model_validate_json(self.config_path.read_text(encoding='utf-8'))
        except (ValidationError, OSError) as e:
            self.logger.error(f"Unusable settings file {self.config_path}: {e}")
            self._set_aside()
            return Settings()

    def _set_aside(self):
        backup = self.config_path.with_suffix(f".{int(time.time())}.bak")
        try:
            self.config_path.rename(backup)
            self.logger.warning(f"Moved the unusable settings file to {backup}; using defaults.")
        except OSError as e:
            self.logger.error(f"Could not move {self.config_path} aside: {e}")

    def save(self, settings: Settings):
        """Writes `settings`; a write failure is logged, the in-memory settings stay in effect."""
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Could not write settings to {self.config_path}: {e}")

    def update(self, settings: Settings, **changes) -> Settings:
        """
        Validates a partial update against the schema and persists the result.

        Raises:
            ValidationError: If any changed value is rejected by the schema.
        """
        new_settings = Settings.model_validate({**settings.model_dump(), **changes})
        self.save(new_settings)
        return new_settings
