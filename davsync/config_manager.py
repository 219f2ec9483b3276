from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from davsync.models import AppConfig, default_app_config


MASK = "***"

# (section, key) pairs never echoed back by masked() and never cleared by
# a blank or masked value in update().
SECRET_FIELDS: tuple[tuple[str, str], ...] = (("secrets", "encryption_key"),)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_blank_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        incoming = sanitized.get(section)
        if not isinstance(incoming, dict) or key not in incoming:
            continue
        if str(incoming[key] or "").strip() in {"", MASK} and current.get(section, {}).get(key):
            del incoming[key]
        if not incoming:
            del sanitized[section]
    return sanitized


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    staging = path.with_name(path.name + ".tmp")
    _write_yaml(staging, data)
    try:
        staging.replace(path)
    except OSError as exc:
        # Bind-mounted single files refuse rename; rewrite them in place.
        if exc.errno != errno.EBUSY:
            raise
        _write_yaml(path, data)
        staging.unlink(missing_ok=True)


class ConfigManager:
    """YAML-backed settings file shared by the admin API and sync runs."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        return AppConfig.from_dict(raw or {})

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write_yaml(self.config_path, config.to_dict())

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge `payload`; blank or masked secrets keep the stored value."""
        with self._lock:
            current = self.load().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, _drop_blank_secrets(payload, current)))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
