"""Project configuration management."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "SERIALDROP_"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///serialdrop.db"
DEFAULT_STORAGE_ROOT = "var/objects"
DEFAULT_BUCKET = "serialdrop"


class ProjectConfig:
    """Access to project configuration values.

    Values come from ``SERIALDROP_*`` environment variables first and from the
    optional JSON file named by ``SERIALDROP_CONFIG_FILE`` second.
    """

    def __init__(self, environ: Optional[dict[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ
        self._data: dict[str, Any] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        config_path = self._environ.get(f"{ENV_PREFIX}CONFIG_FILE")
        if config_path and Path(config_path).exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                # A broken file is treated as empty so env values still apply
                logger.warning("Ignoring unreadable config file %s: %s", config_path, exc)
                self._data = {}

        self._loaded = True

    def _env(self, name: str) -> Optional[str]:
        value = self._environ.get(f"{ENV_PREFIX}{name.upper()}")
        return value if value else None

    @property
    def database_url(self) -> str:
        """SQLAlchemy async URL of the relational store."""
        self._ensure_loaded()
        return self._env("database_url") or self._data.get("database_url", DEFAULT_DATABASE_URL)

    @property
    def storage_root(self) -> Path:
        """Root directory of the filesystem object store."""
        self._ensure_loaded()
        return Path(self._env("storage_root") or self._data.get("storage_root", DEFAULT_STORAGE_ROOT))

    @property
    def bucket(self) -> str:
        """Bucket name recorded in chapter body and artifact pointers."""
        self._ensure_loaded()
        return self._env("bucket") or self._data.get("bucket", DEFAULT_BUCKET)

    @property
    def mailgun_api_key(self) -> Optional[str]:
        self._ensure_loaded()
        return self._env("mailgun_api_key") or self._data.get("mailgun_api_key")

    @property
    def mailgun_endpoint(self) -> Optional[str]:
        self._ensure_loaded()
        return self._env("mailgun_endpoint") or self._data.get("mailgun_endpoint")

    @property
    def from_email(self) -> Optional[str]:
        self._ensure_loaded()
        return self._env("from_email") or self._data.get("from_email")

    @property
    def pushover_token(self) -> Optional[str]:
        self._ensure_loaded()
        return self._env("pushover_token") or self._data.get("pushover_token")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value, environment first."""
        self._ensure_loaded()
        env_value = self._env(key)
        if env_value is not None:
            return env_value
        return self._data.get(key, default)


@lru_cache(maxsize=1)
def get_config() -> ProjectConfig:
    """Get the singleton configuration instance."""
    return ProjectConfig()
