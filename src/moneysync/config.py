"""Centralized configuration management for MoneySync.

This module provides a Pydantic Settings-based configuration system that
consolidates sync, job queue, remote and provider settings with environment
variable integration, type validation, and clear error handling.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROFILE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _check_profile_name(profile: str) -> str:
    if not profile:
        raise ValueError("Profile name cannot be empty")
    if not _PROFILE_PATTERN.match(profile):
        raise ValueError(
            f"Invalid profile: {profile}. "
            "Profile name must contain only alphanumeric characters, dashes, and underscores"
        )
    return profile


class DatabaseConfig(BaseModel):
    """Database configuration settings."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(
        default=Path("data/default/moneysync.duckdb"),
        description="Path to the DuckDB file holding the local cache and queues",
    )
    create_dirs: bool = Field(
        default=True, description="Automatically create database directories"
    )

    @field_validator("path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Ensure database path has correct extension."""
        if str(v) == ":memory:":
            return v
        if not str(v).endswith((".db", ".duckdb")):
            raise ValueError("Database path must end with .db or .duckdb")
        return v


class RetryPolicy(BaseModel):
    """Retry, backoff and timeout policy for one job type.

    The delay before attempt ``n + 1`` is
    ``min(max_delay, base_delay * multiplier ** (n - 1))`` seconds.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, le=50)
    base_delay: float = Field(default=2.0, ge=0.0, description="Seconds")
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=300.0, ge=0.0, description="Seconds")
    timeout: float = Field(
        default=300.0, gt=0.0, description="Per-attempt handler timeout in seconds"
    )

    def delay_for(self, attempts: int) -> float:
        """Backoff delay in seconds after the given number of attempts."""
        exponent = max(attempts - 1, 0)
        return min(self.max_delay, self.base_delay * self.multiplier**exponent)


class JobLimiter(BaseModel):
    """Concurrency and rate limits applied to one job type."""

    model_config = ConfigDict(frozen=True)

    max_concurrent: int = Field(default=5, ge=1)
    max_per_window: int = Field(default=10, ge=1)
    window_seconds: float = Field(default=1.0, gt=0.0)


class SyncConfig(BaseModel):
    """Sync engine and change queue settings."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(
        default="local-device", description="Identifier of this device"
    )
    max_retries: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Failed pushes before a change is moved to dead letters",
    )
    push_timeout: float = Field(
        default=30.0, gt=0.0, description="Seconds allowed for one push call"
    )
    pull_timeout: float = Field(
        default=30.0, gt=0.0, description="Seconds allowed for one pull page"
    )
    pull_page_size: int = Field(
        default=500, ge=1, le=5000, description="Maximum snapshots per pull page"
    )


class JobsConfig(BaseModel):
    """Background job processor settings."""

    model_config = ConfigDict(frozen=True)

    sync_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    financial_sync_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    notification_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            max_attempts=3, base_delay=1.0, max_delay=60.0, timeout=60.0
        )
    )
    sync_limiter: JobLimiter = Field(default_factory=JobLimiter)
    financial_sync_limiter: JobLimiter = Field(
        default_factory=lambda: JobLimiter(max_concurrent=2, max_per_window=5)
    )
    notification_limiter: JobLimiter = Field(
        default_factory=lambda: JobLimiter(max_concurrent=10, max_per_window=100)
    )
    lease_duration: float = Field(
        default=30.0, gt=0.0, description="Seconds a claimed job stays leased"
    )
    max_stalled_count: int = Field(
        default=1,
        ge=0,
        description="Times a job may be reclaimed after its lease expires",
    )
    auto_renew_lease: bool = Field(
        default=True, description="Renew leases automatically while handlers run"
    )
    poll_interval: float = Field(
        default=1.0, gt=0.0, description="Seconds an idle worker waits before polling"
    )


class RemoteConfig(BaseModel):
    """Server of record connection settings."""

    model_config = ConfigDict(frozen=True)

    use_local_server: bool = Field(
        default=False,
        description=(
            "Use the in-process server of record instead of HTTP. It keeps no "
            "state between runs, so only enable it for demos and tests"
        ),
    )
    server_url: str = Field(default="", description="Base URL of the sync API")
    api_key: str = Field(default="", description="Bearer token for the sync API")
    timeout: float = Field(default=30.0, gt=0.0, description="HTTP timeout")


class PlaidConfig(BaseModel):
    """Plaid API configuration settings."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(default="", description="Plaid client ID")
    secret: str = Field(default="", description="Plaid secret key")
    environment: Literal["sandbox", "development", "production"] = Field(
        default="sandbox", description="Plaid environment"
    )
    days_lookback: int = Field(
        default=30,
        ge=1,
        le=730,
        description="Days of transactions fetched by an incremental sync",
    )
    batch_size: int = Field(
        default=500, ge=1, le=500, description="Batch size for API requests"
    )
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Maximum API retry attempts"
    )
    retry_delay: float = Field(
        default=1.0, ge=0.1, le=10.0, description="Delay between retries in seconds"
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.secret)


class LoggingConfig(BaseModel):
    """Logging configuration settings."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_to_file: bool = Field(default=True, description="Enable file logging")
    log_file_path: Path = Field(
        default=Path("logs/default/moneysync.log"), description="Path to log file"
    )
    max_file_size_mb: int = Field(
        default=50, ge=1, le=1000, description="Maximum log file size in MB"
    )
    backup_count: int = Field(
        default=5, ge=1, le=50, description="Number of log file backups to keep"
    )


class MoneySyncSettings(BaseSettings):
    """Main application settings with environment variable integration.

    Environment variables are loaded with the MONEYSYNC_ prefix.
    For nested configs, use double underscores: MONEYSYNC_SYNC__MAX_RETRIES

    Profile Support:
    - Loads from .env.{profile} files (e.g., .env.dev, .env.prod)
    - Falls back to .env
    - Database and log paths default to data/{profile}/ and logs/{profile}/
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    plaid: PlaidConfig = Field(default_factory=PlaidConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    debug: bool = Field(default=False, description="Enable debug mode")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )
    profile: str = Field(
        default="default",
        description="User profile name (e.g., alice, bob, household)",
    )

    @field_validator("profile")
    @classmethod
    def validate_profile_name(cls, v: str) -> str:
        """Validate profile name is safe for use in file paths."""
        return _check_profile_name(v)

    def __init__(self, **kwargs: Any):
        """Initialize settings with profile-scoped paths and legacy overrides.

        Args:
            **kwargs: Additional configuration overrides
        """
        profile = kwargs.get("profile", "default")

        if "database" not in kwargs:
            duckdb_path = os.getenv("MONEYSYNC_DB_PATH")
            path = (
                Path(duckdb_path)
                if duckdb_path
                else Path("data") / profile / "moneysync.duckdb"
            )
            kwargs["database"] = DatabaseConfig(path=path)

        if "logging" not in kwargs:
            kwargs["logging"] = LoggingConfig(
                log_file_path=Path("logs") / profile / "moneysync.log"
            )

        # Plaid credentials share the variable names used by Plaid's own tooling
        if "plaid" not in kwargs:
            client_id = os.getenv("PLAID_CLIENT_ID")
            secret = os.getenv("PLAID_SECRET")
            env = os.getenv("PLAID_ENV", "sandbox")
            if client_id and secret:
                plaid_config: dict[str, Any] = {"client_id": client_id, "secret": secret}
                if env in ("sandbox", "development", "production"):
                    plaid_config["environment"] = env
                kwargs["plaid"] = PlaidConfig(**plaid_config)

        super().__init__(**kwargs)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize how settings are loaded to support profile-based env files."""
        init_dict = init_settings.init_kwargs if init_settings else {}
        profile = init_dict.get("profile", "dev")  # type: ignore[reportUnknownMemberType]

        profile_env_file = Path(f".env.{profile}")
        env_file = str(profile_env_file) if profile_env_file.exists() else ".env"

        from pydantic_settings import DotEnvSettingsSource

        custom_dotenv = DotEnvSettingsSource(
            settings_cls,
            env_file=env_file,
            env_file_encoding="utf-8",
        )

        # Later sources override earlier ones
        return (
            init_settings,
            env_settings,
            custom_dotenv,
            file_secret_settings,
        )

    model_config = SettingsConfigDict(
        env_file=".env",  # Overridden by settings_customise_sources
        env_file_encoding="utf-8",
        env_prefix="MONEYSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @model_validator(mode="after")
    def validate_environment(self) -> "MoneySyncSettings":
        """Production must talk to a real server of record."""
        if self.environment == "production" and self.remote.use_local_server:
            raise ValueError("The local server of record cannot be used in production")
        return self

    def create_directories(self) -> None:
        """Create necessary directories for the application."""
        directories = [self.logging.log_file_path.parent]
        if str(self.database.path) != ":memory:":
            directories.append(self.database.path.parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def validate_required_credentials(self) -> None:
        """Validate that credentials for the configured remote are present."""
        errors: list[str] = []

        if not self.remote.use_local_server and not self.remote.server_url:
            errors.append("MONEYSYNC_REMOTE__SERVER_URL is required")
        if bool(self.plaid.client_id) != bool(self.plaid.secret):
            errors.append("PLAID_CLIENT_ID and PLAID_SECRET must be set together")

        if errors:
            raise ValueError(f"Missing required configuration: {', '.join(errors)}")


# Global settings instances - lazy loaded per profile
_settings_cache: dict[str, MoneySyncSettings] = {}
_current_profile: str = "default"


def get_settings(profile: str | None = None) -> MoneySyncSettings:
    """Get the settings instance for the specified user profile.

    Settings are loaded once per profile and cached.

    Args:
        profile: User profile name (e.g., 'alice', 'bob'). Defaults to current profile.

    Returns:
        MoneySyncSettings: The configuration instance for the specified profile

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    if profile is None:
        profile = _current_profile

    if profile in _settings_cache:
        return _settings_cache[profile]

    try:
        settings = MoneySyncSettings(profile=profile)
        settings.validate_required_credentials()

        if settings.database.create_dirs:
            settings.create_directories()

        _settings_cache[profile] = settings
        return settings

    except Exception as e:
        raise ValueError(f"Configuration error for profile '{profile}': {e}") from e


def set_current_profile(profile: str) -> None:
    """Set the current active user profile.

    Raises:
        ValueError: If profile name contains invalid characters
    """
    global _current_profile

    _current_profile = _check_profile_name(profile)


def get_current_profile() -> str:
    """Get the current active user profile."""
    return _current_profile


def reload_settings(profile: str | None = None) -> MoneySyncSettings:
    """Reload settings from environment variables.

    Args:
        profile: Profile to reload. If None, reloads current profile.

    Returns:
        MoneySyncSettings: The reloaded configuration instance
    """
    if profile is None:
        profile = _current_profile

    _settings_cache.pop(profile, None)
    return get_settings(profile)


def clear_settings_cache() -> None:
    """Drop every cached profile; used by tests to isolate configuration."""
    _settings_cache.clear()
