"""Pytest fixtures for CLI tests.

Provides a helper that runs offline-sync in a subprocess against the
temporary config directory.
"""

from __future__ import annotations

import os
import subprocess
import sys
from typing import Callable

import pytest

from offline_sync.config import Config

from tests.helpers import SRC_DIR


@pytest.fixture
def run_cli(test_config: Config) -> Callable[..., subprocess.CompletedProcess]:
    """Run `offline-sync -d <test dir> cli ...` in a subprocess.

    Args:
        test_config: Config fixture (creates config.json in the test dir)

    Returns:
        Function taking CLI arguments and returning the completed process
    """
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in [str(SRC_DIR), env.get("PYTHONPATH", "")] if p
    )

    def run(*args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [
                sys.executable, "-m", "offline_sync.main",
                "-d", str(test_config.get_config_dir()),
                "cli", *args,
            ],
            capture_output=True,
            text=True,
            env=env,
        )

    return run
