"""Configuration settings for batocera_provision.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
Nothing is persisted between runs.
"""

import logging
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT_FILE = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def _default_work_dir() -> Path:
    """Return the default scratch directory."""
    return Path(tempfile.gettempdir()) / "batocera-provision"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BATOCERA_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BATOCERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Scratch directory for the downloaded archive and staged image",
    )
    clear_work_dir: bool = Field(
        default=True,
        description="Delete the scratch directory contents before use",
    )

    # Partition repair
    mount_designator: str | None = Field(
        default=None,
        description="Drive letter or mount directory for the SHARE partition "
        "(platform default if not set)",
    )
    share_label: str = Field(
        default="SHARE",
        min_length=1,
        max_length=11,
        description="Filesystem label given to an unlabelled SHARE partition",
    )
    partition_selector: Literal["last", "largest", "label"] = Field(
        default="last",
        description="How the data partition is picked among the card's partitions",
    )

    # Flashing
    verification_mode: Literal["full-hash", "prefix-16MiB", "prefix-64MiB", "skipped"] = (
        Field(
            default="prefix-64MiB",
            description="Read-back verification after writing the image",
        )
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for image downloads",
    )
    command_timeout: int = Field(
        default=120,
        ge=5,
        description="Timeout for host disk tool invocations",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_file: Path | None = Field(
        default=None,
        description="Optional file receiving a full DEBUG log of the run",
    )


def get_settings() -> Settings:
    """Get the application settings.

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


def configure_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """Install console (Rich) and optional file handlers on the package logger.

    Args:
        level: Console log level name.
        log_file: If given, a DEBUG-level plain-text log is appended there.
        console: Rich console to render to (stderr by default).
    """
    logger = logging.getLogger("batocera_provision")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    logger.addHandler(rich_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT_FILE))
        logger.addHandler(file_handler)


__all__ = ["Settings", "configure_logging", "get_settings", "print_settings_json"]
