"""
Configuration for BeMore Core.

Settings come from an optional JSON file and ``BEMORE_*`` environment
variables, environment taking precedence.
"""

import json
import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .classifier import ClassifierProfile

logger = logging.getLogger(__name__)

ENV_PREFIX = "BEMORE_"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Runtime settings, read from ``BEMORE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
    )

    api_base_url: str = Field(
        "http://localhost:3000/api", description="Base URL of the analysis backend"
    )
    api_timeout: float = Field(30.0, gt=0, description="Request timeout in seconds")
    api_token: str | None = Field(None, description="Bearer token for the backend")
    storage_dir: Path = Field(
        Path(".bemore"), description="Directory for persisted store state"
    )
    classifier_profile: ClassifierProfile = ClassifierProfile.DASHBOARD
    trend_window: int = Field(5, ge=1)
    recording_interval: float = Field(
        5.0, gt=0, description="Seconds between recorded aggregate results"
    )
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {value}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables override values passed in from a settings file
        return env_settings, init_settings


def load_settings(path: Path | str | None = None) -> Settings:
    """
    Build settings from an optional JSON file and the environment.

    Args:
        path: Optional JSON settings file; a missing file is ignored

    Returns:
        Validated settings

    Raises:
        pydantic.ValidationError: If a value is invalid
    """
    values: dict[str, object] = {}

    if path is not None:
        settings_path = Path(path)
        if settings_path.exists():
            values = json.loads(settings_path.read_text(encoding="utf-8"))
        else:
            logger.info("Settings file %s not found, using defaults", settings_path)

    return Settings(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
