"""
modelcarton Configuration.

Settings and configuration management.
"""

from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "modelcarton"


class CartonSettings(BaseSettings):
    """Global settings for modelcarton."""

    model_config = SettingsConfigDict(env_prefix="CARTON_", env_file=".env", extra="ignore")

    # General
    debug: bool = Field(default=False, description="Debug mode")

    # Archive store
    cache_dir: Path = Field(default_factory=_default_cache_dir, description="Archive cache directory")
    max_cache_bytes: int = Field(default=0, ge=0, description="Cache size limit in bytes (0 = unlimited)")

    # Downloads
    download_timeout_s: float = Field(default=300.0, gt=0, description="Total timeout per download")
    download_chunk_size: int = Field(default=1 << 20, gt=0, description="Streaming chunk size in bytes")

    # Packing
    pack_output_dir: Optional[Path] = Field(default=None, description="Where pack() writes archives by default")

    # Devices
    visible_device: Optional[str] = Field(default=None, description="Default device selector for load()")
    strict_device: bool = Field(default=False, description="Raise instead of falling back to CPU")


# Global settings instance
_settings: Optional[CartonSettings] = None


def get_settings() -> CartonSettings:
    """Get global settings instance."""
    global _settings
    if _settings is None:
        _settings = CartonSettings()
    return _settings


def configure(settings: CartonSettings) -> None:
    """Set global settings."""
    global _settings
    _settings = settings
