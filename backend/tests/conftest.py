"""
Root pytest configuration for backend tests.

Provides:
- backend/ on sys.path so `from services...` / `from db.sql import ...` work
- Shared fixtures (reader, sync_time, app, client)
"""

import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock

# Add backend directory to Python path so imports like
# `from db.sql import ...` and `from utils.normalize import ...` work
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import pytest


LAST_SYNC_AT = datetime(2026, 10, 18, 3, 15, 0)


@pytest.fixture
def reader():
    """GibUserReader double; tests set return values per endpoint."""
    return Mock()


@pytest.fixture
def sync_time():
    provider = Mock()
    provider.get_last_sync_at.return_value = LAST_SYNC_AT
    return provider


@pytest.fixture
def app(monkeypatch, reader, sync_time):
    """Create test Flask application with injected read services."""
    monkeypatch.setenv('GIB_GAUGE_REFRESHER_ENABLED', 'false')
    from app import create_app
    from services.gib_metrics import PrometheusMetrics

    app = create_app(reader=reader, metrics=PrometheusMetrics(), sync_time=sync_time)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
