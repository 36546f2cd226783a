"""
Facility Harvester - Configuration Settings

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables and .env files.

Environment variables can be set directly or via a .env file in the project root.
All settings have sensible defaults, so a harvest can be started without any
configuration at all; concurrency and retry behaviour are the usual overrides.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.harvest_concurrency)
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Determine Project Root
# =============================================================================

def get_project_root() -> Path:
    """Get the project root directory."""
    # Start from this file's directory and go up to find the project root
    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "pyproject.toml").exists():
            return current
        current = current.parent
    # Fallback to the config directory's parent
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = get_project_root()


# =============================================================================
# Settings Classes
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden by environment variables.
    Pipeline knobs use a HARVEST_ prefix in the field name itself, so
    HARVEST_CONCURRENCY maps to harvest_concurrency.
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # -------------------------------------------------------------------------
    # Environment
    # -------------------------------------------------------------------------
    environment: str = Field(
        default="development",
        description="Application environment (development, test, production)",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_file: Optional[str] = Field(
        default="logs/harvest.log",
        description="Log file path (relative to project root or absolute)",
    )
    log_format: str = Field(
        default="text",
        description="Console log format (json or text); files are always JSON",
    )
    log_max_bytes: int = Field(
        default=10_485_760,  # 10 MB
        description="Maximum log file size before rotation",
    )
    log_backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep",
    )

    # -------------------------------------------------------------------------
    # Harvest Pipeline
    # -------------------------------------------------------------------------
    harvest_concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum number of work items processed at once",
    )
    harvest_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per network operation before giving up",
    )
    harvest_backoff_base_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry; doubles on each attempt",
    )
    harvest_backoff_ceiling_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Upper bound for any single retry delay",
    )
    harvest_skip_completed: bool = Field(
        default=True,
        description="Resume from the checkpoint instead of starting over",
    )
    harvest_retry_failed: bool = Field(
        default=True,
        description="Retry items that failed in a previous run",
    )
    harvest_track_in_progress: bool = Field(
        default=True,
        description="Record in_progress markers in the checkpoint log",
    )
    harvest_progress_interval: int = Field(
        default=10,
        ge=1,
        description="Number of processed items between progress log lines",
    )

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single web request",
    )
    request_max_connections: int = Field(
        default=10,
        ge=1,
        description="Connection pool size for the shared HTTP client",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User agent for web requests",
    )

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------
    data_directory: str = Field(
        default="data",
        description="Directory for the checkpoint log and cached crawls",
    )
    output_directory: str = Field(
        default="output",
        description="Directory for CSV output and per-item files",
    )
    checkpoint_filename: str = Field(
        default="progress.jsonl",
        description="Checkpoint log file name inside the data directory",
    )
    output_filename: str = Field(
        default="facilities.csv",
        description="CSV output file name inside the output directory",
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is json or text."""
        v_lower = v.lower()
        if v_lower not in {"json", "text"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'text'")
        return v_lower

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_envs = {"development", "test", "production"}
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v_lower

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        """Ceiling must not be below the base delay."""
        if self.harvest_backoff_ceiling_seconds < self.harvest_backoff_base_seconds:
            raise ValueError(
                "HARVEST_BACKOFF_CEILING_SECONDS must be >= HARVEST_BACKOFF_BASE_SECONDS"
            )
        return self

    # -------------------------------------------------------------------------
    # Computed Properties
    # -------------------------------------------------------------------------

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return PROJECT_ROOT

    def _resolve(self, directory: str) -> Path:
        path = Path(directory)
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        return path

    def get_log_file_path(self) -> Optional[Path]:
        """Get the absolute path to the log file."""
        if not self.log_file:
            return None
        return self._resolve(self.log_file)

    def get_data_path(self, *parts: str) -> Path:
        """Get a path within the data directory."""
        return self._resolve(self.data_directory).joinpath(*parts)

    def get_output_path(self, *parts: str) -> Path:
        """Get a path within the output directory."""
        return self._resolve(self.output_directory).joinpath(*parts)

    @property
    def checkpoint_path(self) -> Path:
        """Absolute path of the checkpoint log."""
        return self.get_data_path(self.checkpoint_filename)

    @property
    def output_path(self) -> Path:
        """Absolute path of the CSV output."""
        return self.get_output_path(self.output_filename)


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Settings are cached after first load. To reload settings (e.g., in tests),
    call get_settings.cache_clear() first.

    Returns:
        Settings instance with all configuration loaded
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache, forcing reload on next access."""
    get_settings.cache_clear()


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "PROJECT_ROOT",
]
