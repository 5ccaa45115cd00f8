"""Configuration management for offline-sync.

This module handles loading and saving engine configuration to/from a JSON
file. The config directory defaults to ~/.config/offline-sync/ and can be
overridden by the OFFLINE_SYNC_CONFIG_DIR environment variable or the
--config-dir CLI argument.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .conflicts import ConflictOptions
from .connectivity import ConnectivityOptions, DEFAULT_ENDPOINTS
from .models import ResolutionStrategy
from .retry import RetryOptions
from .sync_service import SyncOptions
from .validation import (
    ValidationError,
    validate_enum,
    validate_non_negative_number,
    validate_positive_int,
)

logger = logging.getLogger(__name__)

__all__ = ["Config", "CONFIG_DIR_ENV", "DEFAULT_CONFIG"]

CONFIG_DIR_ENV = "OFFLINE_SYNC_CONFIG_DIR"
CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG: Dict[str, Any] = {
    "database_file": "offline_sync.db",
    "sync": {
        "batch_size": 10,
        "max_concurrent_syncs": 3,
        "sync_interval": 300.0,
        "auto_sync_enabled": True,
    },
    "retry": {
        "max_attempts": 5,
        "initial_delay_ms": 1000,
        "max_delay_ms": 30000,
        "backoff_multiplier": 2.0,
        "jitter": True,
    },
    "connectivity": {
        "check_interval": 30.0,
        "timeout": 5.0,
        "endpoints": list(DEFAULT_ENDPOINTS),
        "max_consecutive_failures": 3,
    },
    "conflicts": {
        "auto_resolve_enabled": True,
        "default_resolution": "use_local",
        "timestamp_tolerance_ms": 1000,
    },
    "remote": {
        "base_url": None,
        "timeout": 10.0,
        "headers": {},
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8765,
    },
}


def _merge_defaults(defaults: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _as_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0", "yes", "no"):
        return value.lower() in ("true", "1", "yes")
    raise ValidationError(field_name, "must be true or false")


class Config:
    """Manages engine configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses
                $OFFLINE_SYNC_CONFIG_DIR or ~/.config/offline-sync/
        """
        if config_dir is None:
            env_dir = os.environ.get(CONFIG_DIR_ENV)
            config_dir = Path(env_dir) if env_dir else Path.home() / ".config" / "offline-sync"
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / CONFIG_FILENAME
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            data = copy.deepcopy(DEFAULT_CONFIG)
            self._write(data)
            logger.info(f"Created default config at {self.config_file}")
            return data
        try:
            loaded = json.loads(self.config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError("config", f"invalid JSON in {self.config_file}: {e}") from e
        if not isinstance(loaded, dict):
            raise ValidationError("config", f"{self.config_file} must contain a JSON object")
        return _merge_defaults(DEFAULT_CONFIG, loaded)

    def _write(self, data: Dict[str, Any]) -> None:
        self.config_file.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def save(self) -> None:
        """Write the current configuration to disk."""
        self._write(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Top-level key or dotted path (e.g. "sync.batch_size")
            default: Returned when the key is absent or null
        """
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else copy.deepcopy(node)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self.save()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    @property
    def database_file(self) -> Path:
        """Path of the SQLite database (relative paths live in config_dir)."""
        path = Path(self.get("database_file", DEFAULT_CONFIG["database_file"]))
        return path if path.is_absolute() else self.config_dir / path

    # ===== Typed sections =====

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.get(name)
        if section is None:
            return copy.deepcopy(DEFAULT_CONFIG[name])
        if not isinstance(section, dict):
            raise ValidationError(name, "must be an object")
        return _merge_defaults(DEFAULT_CONFIG[name], section)

    def get_sync_options(self) -> SyncOptions:
        """Get orchestrator options. The replay attempt cap is retry.max_attempts."""
        section = self._section("sync")
        retry = self.get_retry_options()
        interval = validate_non_negative_number(section["sync_interval"], "sync.sync_interval")
        if interval == 0:
            raise ValidationError("sync.sync_interval", "must be greater than zero")
        return SyncOptions(
            batch_size=validate_positive_int(section["batch_size"], "sync.batch_size"),
            max_concurrent_syncs=validate_positive_int(
                section["max_concurrent_syncs"], "sync.max_concurrent_syncs"
            ),
            sync_interval=interval,
            auto_sync_enabled=_as_bool(section["auto_sync_enabled"], "sync.auto_sync_enabled"),
            max_retry_attempts=retry.max_attempts,
            retry=retry,
        )

    def get_retry_options(self) -> RetryOptions:
        section = self._section("retry")
        multiplier = validate_non_negative_number(
            section["backoff_multiplier"], "retry.backoff_multiplier"
        )
        if multiplier < 1:
            raise ValidationError("retry.backoff_multiplier", "must be at least 1")
        return RetryOptions(
            max_attempts=validate_positive_int(section["max_attempts"], "retry.max_attempts"),
            initial_delay_ms=int(
                validate_non_negative_number(section["initial_delay_ms"], "retry.initial_delay_ms")
            ),
            max_delay_ms=int(
                validate_non_negative_number(section["max_delay_ms"], "retry.max_delay_ms")
            ),
            backoff_multiplier=multiplier,
            jitter=_as_bool(section["jitter"], "retry.jitter"),
        )

    def get_connectivity_options(self) -> ConnectivityOptions:
        section = self._section("connectivity")
        endpoints = section["endpoints"]
        if not isinstance(endpoints, list) or not endpoints:
            raise ValidationError("connectivity.endpoints", "must be a non-empty list")
        for endpoint in endpoints:
            if not isinstance(endpoint, str) or not endpoint.startswith(("http://", "https://")):
                raise ValidationError("connectivity.endpoints", f"invalid URL: {endpoint!r}")
        interval = validate_non_negative_number(
            section["check_interval"], "connectivity.check_interval"
        )
        if interval == 0:
            raise ValidationError("connectivity.check_interval", "must be greater than zero")
        return ConnectivityOptions(
            check_interval=interval,
            timeout=validate_non_negative_number(section["timeout"], "connectivity.timeout"),
            endpoints=list(endpoints),
            max_consecutive_failures=validate_positive_int(
                section["max_consecutive_failures"], "connectivity.max_consecutive_failures"
            ),
        )

    def get_conflict_options(self) -> ConflictOptions:
        section = self._section("conflicts")
        return ConflictOptions(
            auto_resolve_enabled=_as_bool(
                section["auto_resolve_enabled"], "conflicts.auto_resolve_enabled"
            ),
            default_resolution=validate_enum(
                section["default_resolution"],
                ResolutionStrategy,
                "conflicts.default_resolution",
            ),
            timestamp_tolerance_ms=validate_non_negative_number(
                section["timestamp_tolerance_ms"], "conflicts.timestamp_tolerance_ms"
            ),
        )

    def get_remote_config(self) -> Dict[str, Any]:
        """Get the remote section: base_url (may be None), timeout, headers."""
        section = self._section("remote")
        base_url = section.get("base_url")
        if base_url is not None and (
            not isinstance(base_url, str) or not base_url.startswith(("http://", "https://"))
        ):
            raise ValidationError("remote.base_url", "must be an http(s) URL")
        headers = section.get("headers") or {}
        if not isinstance(headers, dict):
            raise ValidationError("remote.headers", "must be an object")
        return {
            "base_url": base_url,
            "timeout": validate_non_negative_number(section.get("timeout", 10.0), "remote.timeout"),
            "headers": {str(k): str(v) for k, v in headers.items()},
        }

    def get_server_config(self) -> Dict[str, Any]:
        section = self._section("server")
        return {
            "host": section.get("host", "127.0.0.1"),
            "port": validate_positive_int(section.get("port", 8765), "server.port"),
        }
