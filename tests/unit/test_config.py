"""Unit tests for configuration management.

Tests src/offline_sync/config.py including:
- Config initialization and the environment override
- Loading, merging with defaults and saving
- Dotted get/set
- Typed option sections and their validation
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from offline_sync.config import CONFIG_DIR_ENV, DEFAULT_CONFIG, Config
from offline_sync.models import ResolutionStrategy
from offline_sync.validation import ValidationError


def write_config(config_dir: Path, data: dict) -> None:
    (config_dir / "config.json").write_text(json.dumps(data), encoding="utf-8")


class TestConfigInit:
    """Test configuration initialization."""

    def test_creates_config_file(self, test_config_dir: Path) -> None:
        """A default config.json is written on first use."""
        config = Config(config_dir=test_config_dir)
        assert config.config_file.exists()
        assert json.loads(config.config_file.read_text()) == DEFAULT_CONFIG

    def test_creates_missing_dir(self, tmp_path: Path) -> None:
        """The config directory is created if needed."""
        config_dir = tmp_path / "nested" / "dir"
        Config(config_dir=config_dir)
        assert config_dir.is_dir()

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """The environment variable selects the directory."""
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path / "from-env"))
        config = Config()
        assert config.get_config_dir() == tmp_path / "from-env"


class TestLoadConfig:
    """Test configuration loading."""

    def test_merges_with_defaults(self, test_config_dir: Path) -> None:
        """Missing keys fall back to defaults, nested sections included."""
        write_config(test_config_dir, {"sync": {"batch_size": 25}})
        config = Config(config_dir=test_config_dir)
        assert config.get("sync.batch_size") == 25
        assert config.get("sync.max_concurrent_syncs") == 3
        assert config.get("server.port") == 8765

    def test_invalid_json(self, test_config_dir: Path) -> None:
        """Corrupt files raise ValidationError."""
        (test_config_dir / "config.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError) as exc:
            Config(config_dir=test_config_dir)
        assert exc.value.field == "config"

    def test_non_object(self, test_config_dir: Path) -> None:
        """A JSON array is not a valid config."""
        write_config(test_config_dir, [])
        with pytest.raises(ValidationError):
            Config(config_dir=test_config_dir)


class TestGetSet:
    """Test get and set."""

    def test_get_default(self, test_config: Config) -> None:
        """Unknown keys return the default."""
        assert test_config.get("nope", "fallback") == "fallback"
        assert test_config.get("sync.nope") is None

    def test_null_returns_default(self, test_config: Config) -> None:
        """Null values return the default."""
        assert test_config.get("remote.base_url", "unset") == "unset"

    def test_set_persists(self, test_config_dir: Path) -> None:
        """Values written with set survive a reload."""
        Config(config_dir=test_config_dir).set("remote.base_url", "https://api.test")
        assert Config(config_dir=test_config_dir).get("remote.base_url") == "https://api.test"

    def test_set_creates_sections(self, test_config: Config) -> None:
        """Setting a nested key creates missing sections."""
        test_config.set("extra.flag", True)
        assert test_config.get("extra") == {"flag": True}

    def test_get_returns_copy(self, test_config: Config) -> None:
        """Mutating a returned section does not change the config."""
        section = test_config.get("sync")
        section["batch_size"] = 999
        assert test_config.get("sync.batch_size") == 10

    def test_database_file(self, test_config: Config, tmp_path: Path) -> None:
        """Relative database paths live in the config directory."""
        assert test_config.database_file == test_config.config_dir / "offline_sync.db"
        absolute = tmp_path / "elsewhere.db"
        test_config.set("database_file", str(absolute))
        assert test_config.database_file == absolute


class TestTypedSections:
    """Test typed option sections."""

    def test_defaults(self, test_config: Config) -> None:
        """Default sections convert to default options."""
        sync = test_config.get_sync_options()
        assert sync.batch_size == 10
        assert sync.retry.initial_delay_ms == 1000
        assert test_config.get_connectivity_options().check_interval == 30.0
        conflicts = test_config.get_conflict_options()
        assert conflicts.default_resolution == ResolutionStrategy.USE_LOCAL
        assert test_config.get_remote_config()["base_url"] is None
        assert test_config.get_server_config() == {"host": "127.0.0.1", "port": 8765}

    @pytest.mark.parametrize(
        "key,value,getter",
        [
            ("sync.batch_size", 0, "get_sync_options"),
            ("sync.sync_interval", 0, "get_sync_options"),
            ("retry.backoff_multiplier", 0.5, "get_retry_options"),
            ("retry.jitter", "maybe", "get_retry_options"),
            ("connectivity.endpoints", [], "get_connectivity_options"),
            ("connectivity.endpoints", ["ftp://x"], "get_connectivity_options"),
            ("conflicts.default_resolution", "coin_flip", "get_conflict_options"),
            ("remote.base_url", "api.test", "get_remote_config"),
            ("server.port", -1, "get_server_config"),
        ],
    )
    def test_invalid_values(self, test_config: Config, key: str, value, getter: str) -> None:
        """Invalid values raise ValidationError naming the key."""
        test_config.set(key, value)
        with pytest.raises(ValidationError) as exc:
            getattr(test_config, getter)()
        assert exc.value.field == key

    def test_string_booleans(self, test_config: Config) -> None:
        """Boolean options accept true/false strings."""
        test_config.set("sync.auto_sync_enabled", "false")
        assert test_config.get_sync_options().auto_sync_enabled is False

    def test_remote_headers(self, test_config: Config) -> None:
        """Header values are stringified."""
        test_config.set("remote.headers", {"X-Version": 2})
        assert test_config.get_remote_config()["headers"] == {"X-Version": "2"}

    def test_retry_cap_drives_replay_cap(self, test_config: Config) -> None:
        """retry.max_attempts is the attempt cap for queued entries."""
        test_config.set("retry.max_attempts", 2)
        sync = test_config.get_sync_options()
        assert sync.max_retry_attempts == 2
        assert sync.retry.max_attempts == 2

    @pytest.mark.parametrize("section", ["sync", "retry", "connectivity", "conflicts", "remote", "server"])
    def test_null_section_uses_defaults(self, test_config: Config, section: str) -> None:
        """A section set to null falls back to its defaults."""
        test_config.set(section, None)
        assert test_config.get_sync_options().batch_size == 10
        assert test_config.get_connectivity_options().timeout == 5.0
        assert test_config.get_conflict_options().auto_resolve_enabled is True
        assert test_config.get_remote_config()["timeout"] == 10.0
        assert test_config.get_server_config()["port"] == 8765

    def test_non_object_section(self, test_config: Config) -> None:
        """A section that is not an object is reported by name."""
        test_config.set("sync", 5)
        with pytest.raises(ValidationError) as exc:
            test_config.get_sync_options()
        assert exc.value.field == "sync"
