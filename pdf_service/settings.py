"""
Service configuration.

Settings come from an optional JSON configuration file and from environment
variables, with environment variables taking precedence over the file.
Out-of-range numeric values fall back to their defaults with a warning, the
same way the browser manager validates its own configuration.
"""

from __future__ import annotations

import functools
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, ValidationError, ValidationInfo, ValidatorFunctionWrapHandler, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, JsonConfigSettingsSource, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "API_KEY"
API_KEY_FILE_FIELD = "ApiKey"
CONFIG_FILE_ENV_VAR = "PDF_SERVICE_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config/appsettings.json"

SOURCE_ENVIRONMENT = "environment"
SOURCE_CONFIG_FILE = "config_file"
SOURCE_NONE = "none"


class AppSettingsFileSource(JsonConfigSettingsSource):
    """JSON configuration file source that logs unreadable files instead of failing startup."""

    def _read_file(self, file_path: Path) -> dict[str, Any]:
        try:
            data = super()._read_file(file_path)
        except (OSError, ValueError) as e:
            logger.error("Cannot read configuration file %s: %s", file_path, e)
            return {}

        if not isinstance(data, dict):
            logger.error("Configuration file %s must contain a JSON object", file_path)
            return {}
        return data


class ApiKeyOriginSource(PydanticBaseSettingsSource):
    """
    Wraps a settings source and records it as ``configuration_source`` when it supplies the API key.

    Sources earlier in ``settings_customise_sources`` win, so the recorded
    origin is always the one whose key is used.
    """

    def __init__(self, settings_cls: type[BaseSettings], source: PydanticBaseSettingsSource, origin: str) -> None:
        super().__init__(settings_cls)
        self._source = source
        self._origin = origin

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._source.get_field_value(field, field_name)

    def __call__(self) -> dict[str, Any]:
        data = dict(self._source())
        data.pop("configuration_source", None)

        file_field_value = data.pop(API_KEY_FILE_FIELD, None)
        api_key = data.pop("api_key", None) or file_field_value
        if api_key:
            data["api_key"] = api_key
            data["configuration_source"] = self._origin
        return data


class ServiceSettings(BaseSettings):
    """
    Settings shared by the API-key gate and the request handlers.

    Attributes:
        api_key: The shared secret expected in the X-API-KEY header, or None if not configured.
        configuration_source: Where the API key came from: environment, config_file or none.
        request_timeout: Deadline in seconds for a whole PDF request (5-600, default 60).
        overlay_ready_timeout: Maximum wait in milliseconds for injected overlays (100-60000, default 5000).
    """

    model_config = SettingsConfigDict(frozen=True, extra="ignore", case_sensitive=False, env_ignore_empty=True)

    api_key: str | None = Field(default=None, validation_alias=AliasChoices("api_key", API_KEY_FILE_FIELD))
    configuration_source: str = SOURCE_NONE
    request_timeout: int = Field(default=60, ge=5, le=600)
    overlay_ready_timeout: int = Field(default=5000, ge=100, le=60000)

    @property
    def api_key_configured(self) -> bool:
        return bool(self.api_key)

    @field_validator("api_key", mode="before")
    @classmethod
    def empty_key_is_unset(cls, value: Any) -> str | None:
        return str(value) if value else None

    @field_validator("request_timeout", "overlay_ready_timeout", mode="wrap")
    @classmethod
    def fall_back_to_default(cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo) -> int:
        try:
            return handler(value)
        except ValidationError as e:
            field = cls.model_fields[info.field_name]
            logger.warning("Invalid %s value %r (%s), using default: %s", info.field_name.upper(), value, e.errors()[0]["msg"], field.default)
            return field.default

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        config_file = Path(os.environ.get(CONFIG_FILE_ENV_VAR, DEFAULT_CONFIG_FILE))
        if not config_file.is_file():
            logger.debug("Configuration file not found: %s", config_file)

        return (
            init_settings,
            ApiKeyOriginSource(settings_cls, env_settings, SOURCE_ENVIRONMENT),
            ApiKeyOriginSource(settings_cls, AppSettingsFileSource(settings_cls, json_file=config_file, json_file_encoding="utf-8"), SOURCE_CONFIG_FILE),
        )


def load_settings() -> ServiceSettings:
    """Build settings from the configuration file and the environment."""
    settings = ServiceSettings()
    if not settings.api_key_configured:
        logger.warning("No API key configured: set %s or %s in the configuration file", API_KEY_ENV_VAR, API_KEY_FILE_FIELD)
    logger.debug(
        "Settings loaded: api_key_source=%s, request_timeout=%ds, overlay_ready_timeout=%dms",
        settings.configuration_source,
        settings.request_timeout,
        settings.overlay_ready_timeout,
    )
    return settings


@functools.lru_cache(maxsize=1)
def get_settings() -> ServiceSettings:
    """
    Get the process-wide settings, loaded once.

    Note:
        This is intended for dependency injection in FastAPI endpoints. Tests
        that change the environment call ``get_settings.cache_clear()``.
    """
    return load_settings()
