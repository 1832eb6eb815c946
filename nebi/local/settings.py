"""CLI configuration loaded from NEBI_* environment variables."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _platform_data_home() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) if appdata else home / "AppData" / "Roaming"
    xdg = os.environ.get("XDG_DATA_HOME")
    return Path(xdg) if xdg else home / ".local" / "share"


def _platform_config_home() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Preferences"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) if appdata else home / "AppData" / "Roaming"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    return Path(xdg) if xdg else home / ".config"


class NebiSettings(BaseSettings):
    """Nebi CLI settings.

    All fields are read from environment variables with the ``NEBI_`` prefix.
    For example, ``NEBI_DATA_DIR=/tmp/nebi`` maps to ``data_dir``.

    Server credentials are **not** managed here -- they live in the
    credentials file under the config directory (see ``store/credentials.py``).
    """

    model_config = SettingsConfigDict(
        env_prefix="NEBI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "WARNING"
    log_file: Path | None = None
    """Optional debug log, rotated by size; stderr keeps ``log_level``."""

    # -- Storage ---------------------------------------------------------------
    data_dir: Path | None = None
    """Owns the index, snapshots and global workspaces.

    Defaults to ``$XDG_DATA_HOME/nebi`` (or the platform equivalent).
    """

    config_dir: Path | None = None
    """Owns credentials and the default-server pointer.

    Defaults to ``$XDG_CONFIG_HOME/nebi`` (or the platform equivalent).
    """

    # -- Network ---------------------------------------------------------------
    request_timeout: float = 30.0
    fetch_workers: int = 4
    """Size of the worker pool used to fetch spec files from a server."""
    ready_timeout: float = 60.0
    """How long ``push`` waits for a newly created environment to become ready."""
    ready_poll_interval: float = 0.5

    # -- Repair ----------------------------------------------------------------
    repair_max_depth: int = 5

    # -- Environment manager ---------------------------------------------------
    pixi_bin: str = "pixi"

    # -- Helpers ---------------------------------------------------------------

    def resolve_data_dir(self) -> Path:
        if self.data_dir is not None:
            return Path(self.data_dir).expanduser().absolute()
        return _platform_data_home() / "nebi"

    def resolve_config_dir(self) -> Path:
        if self.config_dir is not None:
            return Path(self.config_dir).expanduser().absolute()
        return _platform_config_home() / "nebi"


def get_settings() -> NebiSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> NebiSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return NebiSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
