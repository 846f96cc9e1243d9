"""Configuration management for ServerPilot.

Settings come from ``SERVERPILOT_*`` environment variables or a ``.env``
file.  Durations are seconds.
"""

import logging
import sys
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """ServerPilot settings with env and file support."""

    model_config = SettingsConfigDict(env_prefix="SERVERPILOT_", env_file=".env", extra="ignore")

    # Plugin tree
    plugins_dir: Path = Field(
        default=_PROJECT_ROOT / "plugins", description="Directory holding one folder per plugin"
    )
    registry_filename: str = Field(
        default=".registry.json", description="Registry file name inside plugins_dir"
    )
    manifest_filename: str = Field(
        default="manifest.json", description="Manifest file name at each plugin root"
    )

    # Command execution
    exec_sync_timeout: float = Field(default=10.0, description="Default blocking command timeout")
    exec_async_timeout: float = Field(
        default=15.0, description="Default non-blocking command timeout"
    )

    # Marketplace
    catalog_url: str = Field(
        default="https://raw.githubusercontent.com/serverpilot/plugins/main/catalog.json",
        description="Remote plugin catalog (JSON)",
    )
    catalog_ttl: float = Field(default=600.0, description="Catalog cache lifetime")
    download_timeout: float = Field(default=60.0, description="Archive download timeout")
    extract_timeout: float = Field(default=120.0, description="Archive extraction timeout")
    max_archive_bytes: int = Field(
        default=50 * 1024 * 1024, description="Largest archive the installer accepts"
    )
    max_extracted_bytes: int = Field(
        default=200 * 1024 * 1024, description="Largest total size an archive may expand to"
    )

    # Lifecycle policy
    rollback_failed_activation: bool = Field(
        default=False,
        description="Mark a plugin disabled again when its activate hook raises",
    )

    # API access: bearer token -> role ("admin" or "viewer")
    api_tokens: dict[str, str] = Field(default_factory=dict)

    log_level: str = Field(default="INFO", description="Root log level")

    @property
    def registry_path(self) -> Path:
        return self.plugins_dir / self.registry_filename


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings (cached)."""
    return Settings()


def setup_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_serverpilot", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler._serverpilot = True  # type: ignore[attr-defined]
    root.addHandler(handler)
