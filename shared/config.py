"""
Shared configuration management for the rate-limit gateway.
"""

from typing import Any

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.logging import get_logger

logger = get_logger("shared.config")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # Admission control
    rate_limit: int = Field(default=10)
    delay: int = Field(default=0)
    duration: int = Field(default=0)
    percentage: int = Field(default=0)

    # Upstream transport
    skip_ssl_validation: bool = Field(default=True)
    upstream_timeout: float = Field(default=30.0)

    @field_validator("port", "rate_limit", "delay", "duration", "percentage", mode="before")
    @classmethod
    def _int_or_default(cls, value: Any, info: ValidationInfo) -> Any:
        """Fall back to the field default when an env value is not an integer."""
        default = cls.model_fields[info.field_name].default
        if value is None or (isinstance(value, str) and not value.strip()):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Invalid integer setting, using default", setting=info.field_name, value=value, default=default)
            return default

    @field_validator("skip_ssl_validation", mode="before")
    @classmethod
    def _bool_or_true(cls, value: Any) -> Any:
        """Unparseable toggles keep certificate checks disabled."""
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "t", "true", "yes", "on"):
            return True
        if text in ("0", "f", "false", "no", "off"):
            return False
        return True


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str

    def __init__(self, service_name: str, **kwargs):
        super().__init__(service_name=service_name, **kwargs)


def get_config(service_name: str, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
