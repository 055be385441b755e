"""Configuration settings for falter_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default toolchain download cache directory."""
    return Path.home() / ".cache" / "falter-imagegen" / "dl"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the FALTER_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FALTER_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote locations
    feed_base_url: str = Field(
        default="https://firmware.berlin.freifunk.net/feed",
        description="Base URL of the falter release package feed",
    )
    dev_feed_base_url: str = Field(
        default="https://firmware.berlin.freifunk.net/feed-dev",
        description="Base URL of the falter development package feed",
    )
    openwrt_base_url: str = Field(
        default="https://downloads.openwrt.org",
        description="Base URL of the OpenWrt download server",
    )

    # Feed layout
    feed_name: str = Field(
        default="falter",
        description="Name of the falter feed inside the package tree",
    )
    metadata_package: str = Field(
        default="falter-common",
        description="Feed package carrying the release metadata file",
    )
    feed_probe_arch: str = Field(
        default="mips_24kc",
        description="Package architecture used to look up release metadata",
    )
    release_file: str = Field(
        default="etc/freifunk_release",
        description="Path of the release metadata file inside the package",
    )
    signing_key_name: str = Field(
        default="packagefeed_master.pub",
        description="Name of the feed's usign public key below the feed base URL",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Persistent cache for downloaded Image Builder archives",
    )
    work_dir: Path = Field(
        default=Path("build"),
        description="Ephemeral build workspace, cleared on every run",
    )
    output_dir: Path = Field(
        default=Path("firmwares"),
        description="Output tree for built firmware, cleared on every run",
    )
    packageset_dir: Path = Field(
        default=Path("packageset"),
        description="Directory tree holding packageset files",
    )
    patches_dir: Path = Field(
        default=Path("patches"),
        description="Patches applied to every extracted Image Builder",
    )
    files_dir: Path = Field(
        default=Path("embedded-files"),
        description="Overlay files passed to Image Builder via FILES=",
    )
    device_flash_file: Path | None = Field(
        default=None,
        description="Optional YAML mapping of device profile to flash size in MiB",
    )

    # Build matrix
    max_packagesets: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum number of packagesets built for 'all'",
    )
    low_flash_devices: list[str] = Field(
        default_factory=list,
        description="Extra device profiles with 8 MiB flash",
    )
    low_flash_overrides: list[str] = Field(
        default_factory=list,
        description="Extra device profiles treated as 8 MiB despite larger flash",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    http_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for index and metadata requests",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for Image Builder downloads",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single device build",
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


__all__ = ["Settings", "get_settings", "print_settings_json"]
