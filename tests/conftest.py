"""
Facility Harvester - Test Configuration

Pytest fixtures and configuration for the test suite.
Every test gets its own data and output directories under tmp_path, and
retry delays are zero so failure paths run instantly.
"""

import os
from pathlib import Path

import pytest

from config.settings import Settings, clear_settings_cache
from harvest.context import PipelineContext
from harvest.models import WorkItem
from harvest.sink import CsvSink


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as an integration test",
    )


# =============================================================================
# Environment Configuration
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Configure environment for testing."""
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("LOG_LEVEL", "WARNING")
    # No log file; tests must not write into the project tree
    os.environ.setdefault("LOG_FILE", "")

    yield


@pytest.fixture(autouse=True)
def fresh_settings_cache():
    """Make sure no test sees settings cached by another."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Settings and Context
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at temporary directories, with no retry delays."""
    return Settings(
        environment="test",
        log_file=None,
        data_directory=str(tmp_path / "data"),
        output_directory=str(tmp_path / "output"),
        harvest_backoff_base_seconds=0,
        harvest_backoff_ceiling_seconds=0,
        harvest_progress_interval=1000,
    )


@pytest.fixture
def make_settings(settings):
    """Factory for settings variants, e.g. make_settings(harvest_concurrency=5)."""
    def _make(**overrides) -> Settings:
        return settings.model_copy(update=overrides)
    return _make


@pytest.fixture
def make_context(settings):
    """
    Factory for a PipelineContext with a CSV sink.

    The context is not entered, so no HTTP client is created unless a test
    passes one in.
    """
    def _make(
        run_settings: Settings = None,
        columns=("id", "value"),
        key_column="id",
        output_path: Path = None,
        http_client=None,
    ) -> PipelineContext:
        run_settings = run_settings or settings
        sink = CsvSink(
            output_path or run_settings.output_path,
            columns=list(columns),
            key_column=key_column,
        )
        return PipelineContext.create(run_settings, sink, http_client=http_client)
    return _make


# =============================================================================
# Sample Data Factories
# =============================================================================

@pytest.fixture
def make_items():
    """Factory for synthetic work items: make_items(100) -> fac-000..fac-099."""
    def _make(count: int, prefix: str = "fac") -> list[WorkItem]:
        return [
            WorkItem(id=f"{prefix}-{n:03d}", payload={"name": f"Facility {n}", "n": n})
            for n in range(count)
        ]
    return _make


@pytest.fixture
def recording_sleep():
    """Sleep replacement that records requested delays without waiting."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
