"""Configuration settings for pkgbake.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def data_home() -> Path:
    """Return the pkgbake data directory, honouring XDG_DATA_HOME."""
    base = os.environ.get("XDG_DATA_HOME")
    root = Path(base) if base else Path.home() / ".local" / "share"
    return root / "pkgbake"


def _default_output_dir() -> Path:
    return data_home() / "output"


def _default_db_url() -> str:
    db_path = data_home() / "history.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PKGBAKE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PKGBAKE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Root directory for collected package trees and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build history",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Staging directory for exported trees (system default if not set)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_parallel_jobs: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of targets built concurrently",
    )

    # Timeouts (in seconds)
    job_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Per-target timeout (no timeout if not set)",
    )

    # Execution
    default_shell: str = Field(
        default="/bin/sh",
        description="Shell used for steps when a stage declares none",
    )
    docker_url: str | None = Field(
        default=None,
        description="Docker daemon URL (uses DOCKER_HOST / default socket if not set)",
    )
    keep_containers: bool = Field(
        default=False,
        description="Stop but do not remove build containers (debugging aid)",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "data_home", "get_settings", "print_settings_json"]
