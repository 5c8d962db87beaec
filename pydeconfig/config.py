"""Configuration management for pydeconfig.

Values are resolved from environment variables first and then from
``~/.config/pydeconfig/config.json``. Explicit arguments passed to the
client or the CLI always win over both.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .exceptions import DeconfigConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.decocms.com"
LOCAL_API_URL = "http://localhost:8787"

# Debounce window for local change batching (seconds)
DEFAULT_DEBOUNCE_SECONDS: float = 0.5

# First ctime of a branch history; watching from here replays everything
DEFAULT_FROM_CTIME: int = 1

# Reconnect backoff for watch subscriptions (seconds)
DEFAULT_RECONNECT_DELAY: float = 2.0
MAX_RECONNECT_DELAY: float = 30.0

DEFAULT_TIMEOUT: float = 30.0
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0

ENV_API_KEY = "DECONFIG_API_KEY"
ENV_API_URL = "DECONFIG_API_URL"
ENV_WORKSPACE = "DECONFIG_WORKSPACE"


class Config:
    """Resolved pydeconfig settings."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or Path.home() / ".config" / "pydeconfig"
        self._file_data: Optional[dict[str, Any]] = None

    def get_config_path(self) -> Path:
        """Return the path of the JSON config file."""
        return self.config_dir / "config.json"

    def _load_file(self) -> dict[str, Any]:
        if self._file_data is not None:
            return self._file_data

        path = self.get_config_path()
        if not path.exists():
            self._file_data = {}
            return self._file_data

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DeconfigConfigError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise DeconfigConfigError(f"Config file {path} must contain an object")

        self._file_data = data
        return data

    def _get(self, env_name: str, key: str) -> Optional[str]:
        value = os.environ.get(env_name)
        if value:
            return value
        file_value = self._load_file().get(key)
        return str(file_value) if file_value else None

    @property
    def api_key(self) -> Optional[str]:
        return self._get(ENV_API_KEY, "api_key")

    @property
    def api_url(self) -> str:
        return self._get(ENV_API_URL, "api_url") or DEFAULT_API_URL

    @property
    def workspace(self) -> Optional[str]:
        return self._get(ENV_WORKSPACE, "workspace")

    def resolve_api_url(self, local: bool = False) -> str:
        """Return the API base URL for the selected target."""
        if local:
            return LOCAL_API_URL
        return self.api_url.rstrip("/")

    def is_configured(self) -> bool:
        """Check whether an API key is available."""
        return bool(self.api_key)

    def save(self, **values: Any) -> Path:
        """Merge values into the config file and write it.

        The file is created with mode 0600 since it holds the API key.
        """
        data = dict(self._load_file())
        data.update({k: v for k, v in values.items() if v is not None})

        self.config_dir.mkdir(parents=True, exist_ok=True)
        path = self.get_config_path()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.chmod(path, 0o600)

        self._file_data = data
        logger.debug(f"Saved configuration to {path}")
        return path

    def save_api_key(self, api_key: str) -> Path:
        return self.save(api_key=api_key)


config = Config()
