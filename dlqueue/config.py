"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
The engine only ever reads these settings; the controller owns writes.
"""

import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import CONFIG_FILE, DEFAULT_DOWNLOAD_DIR, DEFAULT_FILENAME_TEMPLATE

QualityPreset = Literal['auto', 'best', 'good', 'normal', 'bad', 'worst']


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    download_path: Path = Field(default_factory=lambda: DEFAULT_DOWNLOAD_DIR)
    max_concurrent_downloads: int = Field(default=4, ge=1, le=20)
    proxy: str = ''
    browser_for_cookies: str = 'none'
    cookies_path: str = ''
    config_path: str = ''
    embed_subs: bool = True
    embed_thumbnail: bool = False
    embed_metadata: bool = True
    embed_chapters: bool = True
    share_watermark: bool = False
    one_click_quality: QualityPreset = 'auto'
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Sub-directories are allowed (they become part of the history path),
        but the template may not escape the download directory.

        Raises:
            ValueError: If the template is invalid.
        """
        normalized = value.replace('\\', '/')
        is_invalid = (
            not value.strip() or
            '%(' not in value or
            '..' in normalized.split('/') or
            normalized.startswith('/') or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must contain a %(...)s field and stay inside the download directory.")
        return value

    @field_validator('download_path', mode='before')
    @classmethod
    def validate_download_path(cls, value) -> Path:
        """Expands a leading '~' and falls back to the default directory when empty."""
        if value is None or not str(value).strip():
            return DEFAULT_DOWNLOAD_DIR
        return Path(str(value).strip()).expanduser()


class ConfigManager:
    """Loads, merges and persists `Settings` as a JSON file."""
    def __init__(self, config_path: Path = CONFIG_FILE):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads and validates the config file.

        A missing file is created with defaults. An unreadable or invalid file
        is renamed to `config.<timestamp>.bak` and defaults are returned.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    @staticmethod
    def merge(settings: Settings, changes: Dict[str, Any]) -> Settings:
        """
        Applies a partial update on top of `settings` and validates the result.

        Raises:
            ValidationError: If any merged field is invalid; `settings` is untouched.
        """
        return Settings.model_validate({**settings.model_dump(), **changes})

    def save(self, settings: Settings):
        """
        Writes `settings` next to the config file, then swaps it into place.

        Args:
            settings: The Settings object to save.
        """
        temp_path = self.config_path.with_name(f"{self.config_path.name}.tmp")
        try:
            temp_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
            temp_path.replace(self.config_path)
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
            temp_path.unlink(missing_ok=True)
