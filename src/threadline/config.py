"""
Threadline Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Threadline logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/threadline if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/threadline if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "threadline" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "threadline" / "logs")

    # Fallback for development/testing environments without HOME
    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url_override: str = Field(
        default="",
        validation_alias=AliasChoices("database_url", "database_url_override"),
    )  # Full URL (e.g. sqlite:///./threadline.db)
    postgres_db: str = "threadline"
    postgres_user: str = "threadline"
    postgres_password: str = "threadline_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Gateway (fallbacks when a connection row carries no credentials)
    evolution_api_url: str = ""
    evolution_api_key: str = ""
    wapi_base_url: str = "https://api.w-api.app/v1"
    gateway_timeout_seconds: float = 10.0  # Status checks
    media_fetch_timeout_seconds: float = 30.0

    # Media storage
    media_dir: str = "./uploads"
    public_base_url: str = "http://localhost:8000"
    media_url_path: str = "/uploads"

    @property
    def media_directory(self) -> Path:
        """Get the blob storage directory as a Path."""
        return Path(self.media_dir).expanduser()

    @property
    def media_url_prefix(self) -> str:
        """Public URL prefix under which stored media is served."""
        return f"{self.public_base_url.rstrip('/')}{self.media_url_path}"

    # Ingestion
    optimistic_match_window_seconds: int = 60  # Pending outbound reconciliation
    presence_ttl_seconds: float = 10.0  # Typing indicator lifetime
    webhook_events_max: int = 200  # Diagnostic ring buffer size
    webhook_preview_max_chars: int = 4000
    webhook_instances_max: int = 100  # Instances tracked for last-seen activity

    # Automation engine (external flow executor)
    automation_engine_url: str = ""  # Empty disables automation dispatch
    automation_engine_token: str = ""
    automation_timeout_seconds: float = 30.0
    automation_max_workers: int = 4

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = True
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True  # Enable console (stdout/stderr) logging
    log_file_enabled: bool = True  # Enable file-based logging
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5  # Keep 5 backup files

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
