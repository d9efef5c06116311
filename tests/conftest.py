"""
Pytest configuration and fixtures for lp-autopilot tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from core.retry import RetryPolicy
from infra.metrics import MetricsRecorder
from infra.position_store import SqlitePositionStore


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite position store per test"""
    return SqlitePositionStore(tmp_path / "positions.db")


@pytest.fixture
def metrics():
    """In-memory metrics (no exporter)"""
    return MetricsRecorder(enabled=False)


@pytest.fixture
def fast_retry():
    """Three attempts with zero backoff"""
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)
