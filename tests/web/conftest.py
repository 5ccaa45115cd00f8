"""Pytest fixtures for web API tests.

Provides a Flask test client bound to an online engine with a fake remote.
"""

from __future__ import annotations

import pytest
from typing import Generator

from flask import Flask
from flask.testing import FlaskClient

from offline_sync.engine import SyncEngine
from offline_sync.web import create_app


@pytest.fixture
def web_app(engine: SyncEngine) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        engine: Online engine fixture

    Yields:
        Flask application instance
    """
    app = create_app(engine)
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()
