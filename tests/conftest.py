"""Pytest fixtures for offline-sync tests.

This module provides fixtures for test configuration, database, and a fully
wired engine with a fake remote and a fake reachability probe.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from offline_sync.config import Config
from offline_sync.database import Database
from offline_sync.engine import SyncEngine
from offline_sync.retry import RetryOptions
from offline_sync.sync_service import SyncOptions

from tests.helpers import FakeProbe, FakeRemote


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "offline_sync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db_path(test_config_dir: Path) -> Path:
    """Get path for test database."""
    return test_config_dir / "offline_sync.db"


@pytest.fixture
def empty_db(test_db_path: Path) -> Generator[Database, None, None]:
    """Create empty test database.

    Yields:
        Empty Database instance.
    """
    db = Database(test_db_path)
    yield db
    db.close()


@pytest.fixture
def probe() -> FakeProbe:
    """Reachability probe that reports every endpoint reachable."""
    return FakeProbe(reachable=True)


@pytest.fixture
def remote() -> FakeRemote:
    """Remote applier that accepts every mutation."""
    return FakeRemote()


@pytest.fixture
def engine(
    test_db_path: Path, remote: FakeRemote, probe: FakeProbe
) -> Generator[SyncEngine, None, None]:
    """Create an engine that is online, with no backoff between retries.

    The engine is not started: tests drive passes with trigger_sync().
    """
    sync_engine = SyncEngine(
        test_db_path,
        remote,
        probe=probe,
        sync_options=SyncOptions(
            retry=RetryOptions(initial_delay_ms=0, jitter=False),
        ),
    )
    sync_engine.connectivity.set_status(True)
    yield sync_engine
    sync_engine.close()
