from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from calhub.models import AppConfig, default_app_config

MASK = "***"

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CALHUB_ENCRYPTION_KEY": ("security", "encryption_key"),
    "GOOGLE_CLIENT_ID": ("google", "client_id"),
    "GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump_yaml(data: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        data,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    result = copy.deepcopy(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = str(environ.get(env_name, "") or "").strip()
        if not value:
            continue
        if not isinstance(result.get(section), dict):
            result[section] = {}
        result[section][key] = value
    return result


class ConfigManager:
    """YAML-backed service settings.

    Secrets may come from the environment instead of the file; ``load`` applies
    those overrides but ``save`` only ever writes what the file itself held.
    """

    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping at the top level")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(apply_env_overrides(self._read_file(), self._environ))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump_yaml(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump_yaml(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("security", {}).get("encryption_key"):
            config["security"]["encryption_key"] = MASK
        if config.get("google", {}).get("client_secret"):
            config["google"]["client_secret"] = MASK
        return config
