"""Shared pytest fixtures for all test modules."""

import logging
from pathlib import Path
from typing import Any, Dict

import pytest

from tests.mocks import FakeToolExecutor, create_test_config


def pytest_configure(config):
    """Register the markers used across the suite."""
    config.addinivalue_line("markers", "unit: fast tests of a single module")
    config.addinivalue_line("markers", "integration: end-to-end runs with fake tools")


@pytest.fixture(autouse=True)
def quiet_matpipe_logging():
    """Keep matpipe logs at INFO so caplog sees them regardless of earlier CLI runs."""
    logging.getLogger("matpipe").setLevel(logging.INFO)
    yield


@pytest.fixture
def fake_tools() -> FakeToolExecutor:
    """Fake external tools with no injected failures."""
    return FakeToolExecutor()


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Output directory for one run."""
    return tmp_path / "out"


@pytest.fixture
def run_config(output_dir: Path) -> Dict[str, Any]:
    """Run configuration for the fake tools (inputs still to be filled in)."""
    return create_test_config(output_dir)
