from __future__ import annotations

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from calflow.errors import ConfigError
from calflow.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

# environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "MONGODB_URI": ("storage", "uri"),
    "MONGODB_DB": ("storage", "database"),
    "FIREBASE_CREDENTIALS": ("auth", "credentials_file"),
    "CALFLOW_HOST": ("server", "host"),
    "CALFLOW_PORT": ("server", "port"),
    "CALFLOW_LOG_LEVEL": ("server", "log_level"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_updates(environ: Mapping[str, str]) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(name, "")
        if value.strip():
            updates.setdefault(section, {})[key] = value.strip()
    return updates


class ConfigManager:
    """Loads settings from an optional YAML file, overlaid by the environment.

    The YAML file carries tuning values (collections, cache sweep interval,
    fetch timeout, listen address). Connection strings and credentials are
    normally supplied through the environment, which always wins.
    """

    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()

    def _read_file(self) -> dict[str, Any]:
        if not self.config_path.exists():
            logger.info("no settings file at %s, using defaults", self.config_path)
            return {}
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"settings file {self.config_path} must contain a mapping")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            merged = _deep_merge(default_app_config().to_dict(), self._read_file())
            merged = _deep_merge(merged, _env_updates(self.environ))
            return AppConfig.from_dict(merged)

    def load_required(self) -> AppConfig:
        config = self.load()
        missing = config.missing_required()
        if missing:
            raise ConfigError("You must set the following environment variables: " + ", ".join(missing))
        return config
