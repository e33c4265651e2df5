"""
CMS Sync Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with CMS_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from cms_sync.config import Settings, ContentMode

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        space_id="your-space-id",
        management_token="your-cma-token",
        content_mode="preview",
    )
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ContentMode(str, Enum):
    """Which read API the pull side talks to."""

    DELIVERY = "delivery"
    PREVIEW = "preview"


class ConflictStrategy(str, Enum):
    """How a rejected push is reconciled with the server copy."""

    LATEST_WINS = "latest_wins"
    LOCAL_WINS = "local_wins"


class ApiConfig(BaseModel):
    """Remote endpoints and HTTP behaviour."""

    management_host: str = Field(
        default="https://api.contentful.com",
        description="Content Management API base URL",
    )
    delivery_host: str = Field(
        default="https://cdn.contentful.com",
        description="Content Delivery API base URL (published content, /sync)",
    )
    preview_host: str = Field(
        default="https://preview.contentful.com",
        description="Content Preview API base URL (drafts, no /sync)",
    )
    upload_host: str = Field(
        default="https://upload.contentful.com",
        description="Upload API base URL for binary payloads",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request read timeout",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for rate-limited or transport-failed requests",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay between transport retries (linear backoff)",
    )


class PollingPolicy(BaseModel):
    """Retry policy for asset processing polls."""

    max_attempts: int = Field(
        default=30,
        ge=1,
        description="Maximum processing polls before giving up",
    )
    interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first poll",
    )
    backoff_factor: float = Field(
        default=1.0,
        ge=1.0,
        description="Multiplier applied to the delay after each poll",
    )
    max_interval_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Upper bound for a single delay",
    )

    def delay(self, attempt: int) -> float:
        """Seconds to wait before poll number ``attempt`` (0-based)."""
        delay = self.interval_seconds * (self.backoff_factor ** attempt)
        return min(delay, self.max_interval_seconds)

    @classmethod
    def immediate(cls, max_attempts: int = 30) -> "PollingPolicy":
        """A zero-delay policy, mostly useful for tests."""
        return cls(
            max_attempts=max_attempts,
            interval_seconds=0.0,
            max_interval_seconds=0.0,
        )


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    auto_publish: bool | None = Field(
        default=None,
        description="Publish after each write (None = on for delivery, off for preview)",
    )
    conflict_resolution: ConflictStrategy = Field(
        default=ConflictStrategy.LATEST_WINS,
        description="Conflict resolution strategy for rejected pushes",
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Concurrent per-record network calls during push",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page size for preview snapshot fetches",
    )
    debounce_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Quiet period after a local edit before auto-sync fires",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for CMS Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (CMS_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export CMS_SYNC_SPACE_ID="your-space"
        export CMS_SYNC_MANAGEMENT_TOKEN="your-token"
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="CMS_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Space
    space_id: str = Field(default="", description="Space identifier")
    environment_id: str = Field(default="master", description="Environment identifier")

    # Credentials
    management_token: SecretStr = Field(
        default=SecretStr(""),
        description="Content Management API token (required for pushing)",
    )
    delivery_token: SecretStr = Field(
        default=SecretStr(""),
        description="Content Delivery API token",
    )
    preview_token: SecretStr = Field(
        default=SecretStr(""),
        description="Content Preview API token",
    )

    # Content
    content_mode: ContentMode = Field(
        default=ContentMode.DELIVERY,
        description="Read published content (delivery) or drafts (preview)",
    )
    locale: str = Field(default="en-US", description="Locale used for field values")
    content_type_id: str = Field(default="book", description="Content type of synced entries")

    # Local store
    database_path: Path = Field(
        default=Path("cms-sync.db"),
        description="Path to the local SQLite store",
    )

    # Nested configs
    api: ApiConfig = Field(default_factory=ApiConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    polling: PollingPolicy = Field(default_factory=PollingPolicy)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("management_token", "delivery_token", "preview_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle tokens from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @property
    def auto_publish(self) -> bool:
        """Effective auto-publish flag; preview edits stay drafts by default."""
        if self.sync.auto_publish is not None:
            return self.sync.auto_publish
        return self.content_mode == ContentMode.DELIVERY

    @property
    def read_token(self) -> str:
        """Token for whichever read API the current mode uses."""
        if self.content_mode == ContentMode.PREVIEW:
            return self.preview_token.get_secret_value()
        return self.delivery_token.get_secret_value()

    def with_mode(self, mode: ContentMode) -> Self:
        """Copy of these settings switched to another content mode."""
        return self.model_copy(update={"content_mode": mode})

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            import tomllib

            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        for key in ("management_token", "delivery_token", "preview_token"):
            if key in data:
                data[key] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            # Basic TOML serialization
            lines = []
            for key, value in data.items():
                if not isinstance(value, dict):
                    lines.append(f"{key} = {json.dumps(value)}")
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        lines.append(f"{k} = {json.dumps(v)}")
            path.write_text("\n".join(lines) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_credentials(self) -> list[str]:
        """Validate that required credentials are present. Returns list of errors."""
        errors = []
        if not self.space_id:
            errors.append("space_id is required")
        if not self.management_token.get_secret_value():
            errors.append("management_token is required")
        if not self.read_token:
            token_name = (
                "preview_token"
                if self.content_mode == ContentMode.PREVIEW
                else "delivery_token"
            )
            errors.append(f"{token_name} is required in {self.content_mode.value} mode")
        return errors


# Convenience function for loading settings
def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
