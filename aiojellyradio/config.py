"""Configuration of the radio, read from the environment and command-line flags."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from aiojellyradio.errors import StartupConfigError
from aiojellyradio.server.stream import MP3_BITRATES_KBPS

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Field name -> environment variable
ENV_VARS: dict[str, str] = {
    "jellyfin_url": "JELLYFIN_URL",
    "jellyfin_api_key": "JELLYFIN_API_KEY",
    "collection_name": "JELLYFIN_COLLECTION_NAME",
    "host": "HOST",
    "port": "PORT",
    "prefetch_depth": "SONG_PREFETCH",
    "history_size": "HISTORY_SIZE",
    "listener_backlog": "LISTENER_BACKLOG",
    "bitrate_kbps": "BITRATE_KBPS",
    "fetch_attempts": "FETCH_ATTEMPTS",
    "catalog_refresh_s": "CATALOG_REFRESH_SECONDS",
    "interstitials_dir": "INTERSTITIALS_DIR",
    "log_level": "LOG_LEVEL",
}


@dataclass(frozen=True)
class RadioConfig:
    """Validated settings of one radio process."""

    jellyfin_url: str
    """Base URL of the Jellyfin server, without trailing slash."""
    jellyfin_api_key: str
    collection_name: str
    """Name of the Jellyfin collection to play from."""
    host: str = "0.0.0.0"
    port: int = 3000
    prefetch_depth: int = 2
    """Tracks kept ready ahead of the playing one (K)."""
    history_size: int = 10
    """Recently played tracks not to repeat (H)."""
    listener_backlog: int = 64
    """Chunks a listener may fall behind before it is dropped."""
    bitrate_kbps: int = 320
    fetch_attempts: int = 3
    catalog_refresh_s: float = 300.0
    interstitials_dir: Path | None = None
    """Folder with HH_MM[_suffix].<ext> time announcements, None disables them."""
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate all values."""
        url = urlsplit(self.jellyfin_url)
        if url.scheme not in ("http", "https") or not url.netloc:
            raise StartupConfigError(f"JELLYFIN_URL must be an http(s) URL, got {self.jellyfin_url!r}")
        object.__setattr__(self, "jellyfin_url", self.jellyfin_url.rstrip("/"))
        for name in ("jellyfin_api_key", "collection_name", "host"):
            if not getattr(self, name).strip():
                raise StartupConfigError(f"{ENV_VARS[name]} must not be empty")
        if not 1 <= self.port <= 65535:
            raise StartupConfigError(f"PORT must be between 1 and 65535, got {self.port}")
        for name, minimum in (
            ("prefetch_depth", 1),
            ("history_size", 0),
            ("listener_backlog", 1),
            ("fetch_attempts", 1),
        ):
            if getattr(self, name) < minimum:
                raise StartupConfigError(
                    f"{ENV_VARS[name]} must be at least {minimum}, got {getattr(self, name)}"
                )
        if self.bitrate_kbps not in MP3_BITRATES_KBPS:
            raise StartupConfigError(
                f"BITRATE_KBPS must be one of {sorted(MP3_BITRATES_KBPS)}, got {self.bitrate_kbps}"
            )
        if self.catalog_refresh_s <= 0:
            raise StartupConfigError("CATALOG_REFRESH_SECONDS must be positive")
        if self.interstitials_dir is not None and not self.interstitials_dir.is_dir():
            raise StartupConfigError(f"INTERSTITIALS_DIR {self.interstitials_dir} is not a directory")
        object.__setattr__(self, "log_level", self.log_level.upper())
        if self.log_level not in LOG_LEVELS:
            raise StartupConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> RadioConfig:
        """
        Build the configuration from environment variables.

        Args:
            environ: Environment to read, defaults to os.environ.
            overrides: Values by field name taking precedence over the environment,
                e.g. parsed command-line flags. None values are ignored.

        Raises:
            StartupConfigError: If a required value is missing or a value is invalid.
        """
        environ = os.environ if environ is None else environ
        overrides = overrides or {}
        values: dict[str, Any] = {}
        for field in fields(cls):
            if (value := overrides.get(field.name)) is not None:
                values[field.name] = value
                continue
            raw = environ.get(ENV_VARS[field.name])
            if raw is None or raw == "":
                continue
            values[field.name] = _convert(field.name, raw)

        missing = [
            ENV_VARS[name]
            for name in ("jellyfin_url", "jellyfin_api_key", "collection_name")
            if name not in values
        ]
        if missing:
            raise StartupConfigError(f"Missing required configuration: {', '.join(missing)}")
        return cls(**values)


_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "port": int,
    "prefetch_depth": int,
    "history_size": int,
    "listener_backlog": int,
    "bitrate_kbps": int,
    "fetch_attempts": int,
    "catalog_refresh_s": float,
    "interstitials_dir": Path,
}


def _convert(name: str, raw: str) -> Any:
    converter = _CONVERTERS.get(name)
    if converter is None:
        return raw
    try:
        return converter(raw)
    except ValueError as err:
        raise StartupConfigError(f"{ENV_VARS[name]} has an invalid value {raw!r}") from err


def configure_logging(config: RadioConfig) -> None:
    """Configure the root logger for the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
