"""Configuration types with environment variable support.

Global settings can be configured via environment variables with the
HOOKSEAL_ prefix. Nested fields use a double underscore.

Example:
    HOOKSEAL_PROVIDERS__STRIPE=whsec_...
    HOOKSEAL_REPLAY_PROTECTION__TOLERANCE=600
    HOOKSEAL_LOG_ATTEMPTS=true

Per-route options are merged with the global settings by
resolve_route_config(), which is the only place precedence is decided.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hookseal.providers import CustomProviderConfig, ProviderName


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


class ReplayProtectionConfig(BaseModel):
    """Global replay protection settings.

    Timestamps older (or newer) than ``tolerance`` seconds are rejected and
    nonces are remembered for the same window.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    enabled: bool = Field(
        default=True,
        description="Enable timestamp freshness and duplicate checks.",
    )
    tolerance: int = Field(
        default=300,
        gt=0,
        description="Tolerance window in seconds (default 5 minutes).",
    )
    redis_url: str | None = Field(
        default=None,
        description="Share nonces through Redis instead of process memory.",
    )
    storage: Any = Field(
        default=None,
        exclude=True,
        description="Custom NonceStorage instance. Takes precedence over redis_url.",
    )


class ReplayProtectionOverride(BaseModel):
    """Per-route replay protection override. Unset fields inherit."""

    enabled: bool | None = None
    tolerance: int | None = Field(default=None, gt=0)


class RouteOptions(BaseModel):
    """Options for a single protected route."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(description="Provider identifier.")
    secret: str | None = Field(default=None, repr=False, description="Secret override.")
    custom_config: CustomProviderConfig | None = Field(
        default=None,
        description="Required when provider is 'custom'.",
    )
    replay_protection: ReplayProtectionOverride | None = None

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> Any:
        if isinstance(value, ProviderName):
            return value.value
        if isinstance(value, str):
            return value.lower()
        return value


class WebhookSettings(BaseSettings):
    """Global webhook verification settings.

    Example:
        settings = WebhookSettings(providers={"github": "s3cret"})
        settings.replay_protection.tolerance
    """

    model_config = SettingsConfigDict(
        env_prefix="HOOKSEAL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    providers: dict[str, str] = Field(
        default_factory=dict,
        repr=False,
        description="Secret per provider identifier.",
    )
    replay_protection: ReplayProtectionConfig = Field(
        default_factory=ReplayProtectionConfig,
        description="Global replay protection settings.",
    )
    log_attempts: bool = Field(
        default=False,
        description="Log every verification attempt.",
    )

    @field_validator("providers", mode="after")
    @classmethod
    def _lowercase_provider_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return {key.lower(): secret for key, secret in value.items()}


@dataclass(frozen=True)
class EffectiveConfig:
    """Fully resolved configuration for one verification."""

    provider: str
    secret: str | None
    custom_config: CustomProviderConfig | None
    replay_enabled: bool
    tolerance: int


def resolve_route_config(settings: WebhookSettings, route: RouteOptions) -> EffectiveConfig:
    """Merge route options over global settings.

    Precedence, field by field:
    - secret: route secret, else the global secret for the provider. Custom
      providers never fall back to the global map.
    - replay enabled / tolerance: route override when set, else global.
    """
    secret = route.secret
    if not secret and route.provider != ProviderName.CUSTOM.value:
        secret = settings.providers.get(route.provider)

    override = route.replay_protection or ReplayProtectionOverride()
    global_rp = settings.replay_protection
    enabled = override.enabled if override.enabled is not None else global_rp.enabled
    tolerance = override.tolerance if override.tolerance is not None else global_rp.tolerance

    return EffectiveConfig(
        provider=route.provider,
        secret=secret or None,
        custom_config=route.custom_config,
        replay_enabled=enabled,
        tolerance=tolerance,
    )


def load_settings(path: str | Path | None = None, **overrides: Any) -> WebhookSettings:
    """Build settings from an optional YAML/TOML file.

    File values and explicit overrides take precedence over environment
    variables.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(load_config_from_file(path))
    data.update(overrides)
    return WebhookSettings(**data)


_settings: WebhookSettings | None = None


def get_settings() -> WebhookSettings:
    """Get the global settings instance.

    To reload settings (e.g., in tests), call clear_settings() first.
    """
    global _settings
    if _settings is None:
        _settings = WebhookSettings()
    return _settings


def clear_settings() -> None:
    """Clear the cached settings."""
    global _settings
    _settings = None
