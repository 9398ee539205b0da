"""Configuration management for the Tool Gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """HTTP surface and aggregation settings."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010)
    providers_path: str = Field(default="config/providers.yaml")
    refresh_timeout_seconds: float = Field(default=30, gt=0)

    # Security
    require_auth: bool = Field(default=True)
    secret_key: str = Field(default="change-me-in-production")
    default_role: str = Field(default="Viewer", description="Role used when auth is disabled")

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )


class ManagedSettings(BaseSettings):
    """First-party (managed connection) tool provider."""
    enabled: bool = Field(default=True)
    id: str = Field(default="builtin")
    endpoint: str = Field(default="http://localhost:8001/mcp")
    headers: dict[str, str] = Field(default_factory=dict)
    connect_timeout_seconds: float = Field(default=10, gt=0)
    call_timeout_seconds: float = Field(default=30, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="MANAGED_",
        env_file=".env",
        extra="ignore"
    )


class OAuthSettings(BaseSettings):
    """Delegated authorization flow settings."""
    authorize_timeout_seconds: float = Field(default=300, gt=0)
    pending_ttl_seconds: int = Field(default=600, gt=0)
    redirect_uri: str = Field(default="http://localhost:8010/oauth/callback")
    client_name: str = Field(default="tool-gateway")
    encryption_key: Optional[str] = Field(default=None, description="32-byte key as hex")
    http_timeout_seconds: float = Field(default=30, gt=0)

    # Remote token custodian; the in-process backend is used when unset
    custody_url: Optional[str] = Field(default=None)
    custody_token: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    managed: ManagedSettings = Field(default_factory=ManagedSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)

    model_config = SettingsConfigDict(
        env_prefix="TOOLGW_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def save_yaml_config(data: dict[str, Any], path: str | Path) -> None:
    """Save configuration to a YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("TOOLGW_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
