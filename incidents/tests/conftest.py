"""Pytest configuration for incident tests.

1. Adds the workspace root to sys.path so `incidents` and `ingest` import from a checkout.
2. Provides fixtures wrapping the in-memory stand-ins from `fakes.py`.
"""
import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add workspace root to Python path for cross-module imports (incidents <-> ingest)
workspace_root = Path(__file__).parent.parent.parent
tests_dir = Path(__file__).parent
for path in (workspace_root, tests_dir):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import T0, InMemoryIncidentStore, RecordingNotifier  # noqa: E402


@pytest.fixture
def store():
    return InMemoryIncidentStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def at():
    """Timestamp `minutes` after the fixed test epoch."""
    return lambda minutes=0: T0 + timedelta(minutes=minutes)
