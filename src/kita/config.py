"""Controller configuration.

Settings come from an optional YAML file plus ``KITA_``-prefixed environment
variables (nested fields use ``__``, e.g. ``KITA_AUTH_FINALIZE__MAX_ATTEMPTS``).
Environment variables take precedence over the file.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from kita.exceptions import ConfigurationError

CONFIG_FILE_ENV = "KITA_CONFIG_FILE"


class Issuer(BaseModel):
    """An ACME issuer such as Let's Encrypt production or staging."""

    directory_url: str
    emails: list[str] = Field(min_length=1)
    terms_of_service_agreed: bool

    model_config = {"frozen": True}

    @field_validator("emails")
    @classmethod
    def emails_not_blank(cls, v: list[str]) -> list[str]:
        if any(not email.strip() for email in v):
            raise ValueError("emails must not be blank")
        return v

    @field_validator("terms_of_service_agreed")
    @classmethod
    def terms_must_be_agreed(cls, v: bool) -> bool:
        if not v:
            raise ValueError("the issuer's terms of service must be agreed to")
        return v


class AuthFinalize(BaseModel):
    """Polling of an authorization after its challenge was observed (RFC 8555 Section 7.5.1)."""

    max_attempts: int = Field(default=60, ge=1)
    # seconds between polls
    poll_delay: float = Field(default=2.0, ge=0)


class Settings(BaseSettings):
    """Validated controller settings.

    Durations are in seconds.
    """

    issuers: dict[str, Issuer] = Field(min_length=1)
    response_timeout: float = Field(default=10.0, gt=0)
    renewal_check_interval: float = Field(default=12 * 60 * 60.0, gt=0)
    auth_finalize: AuthFinalize = AuthFinalize()
    challenge_wait_timeout: float = Field(default=60.0, gt=0)
    solver_ready_timeout: float = Field(default=120.0, gt=0)
    dry_run: bool = False
    solver_role: str = Field(default="solver", min_length=1)
    override_issuer: str | None = None
    namespace: str | None = None
    responder_host: str = "0.0.0.0"
    responder_port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = "INFO"
    # path to a CA bundle, or False to skip verification of the ACME server
    ca_cert: str | bool = True

    model_config = SettingsConfigDict(
        env_prefix="KITA_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="after")
    def override_issuer_is_configured(self) -> "Settings":
        if self.override_issuer is not None and self.override_issuer not in self.issuers:
            raise ValueError(f"override_issuer {self.override_issuer!r} is not a configured issuer")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # file contents arrive as init kwargs; the environment wins over them
        return env_settings, init_settings, file_secret_settings


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML settings file.

    Raises:
        ConfigurationError: If the file is missing or not a YAML mapping.
    """
    try:
        with open(path) as config_file:
            data = yaml.safe_load(config_file)
    except OSError as e:
        raise ConfigurationError(f"Unable to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def load_settings(config_file: str | Path | None = None) -> Settings:
    """Load and validate settings.

    Args:
        config_file: YAML file; defaults to the KITA_CONFIG_FILE variable.

    Returns:
        Validated settings.

    Raises:
        ConfigurationError: If the settings are invalid.
    """
    config_file = config_file or os.environ.get(CONFIG_FILE_ENV)
    data = read_config_file(config_file) if config_file else {}

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
