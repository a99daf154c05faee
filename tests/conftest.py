"""
Pytest configuration and fixtures for MCP Aggregator testing.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from mcp_aggregator.utils.config import AggregatorConfig
from tests.utils.helpers import FIXTURE_SERVER, fixture_run_command, write_configuration


@pytest.fixture
def fixture_server_script() -> Path:
    return FIXTURE_SERVER


@pytest.fixture
def socket_dir():
    """Short temporary directory for Unix sockets (paths are length-limited)."""
    path = tempfile.mkdtemp(prefix="mcpagg-")
    try:
        yield Path(path)
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Data directory with one configured fixture server, 'fixture/echo'."""
    directory = tmp_path / "data"
    write_configuration(directory, {
        "fixture/echo": {
            "source": str(tmp_path),
            "run": fixture_run_command(),
            "env": {"ECHO_SERVER_NAME": "fixture-echo"},
        },
    })
    return directory


@pytest.fixture
def test_config(data_dir) -> AggregatorConfig:
    """Configuration with short timeouts pointing at the fixture data dir."""
    return AggregatorConfig(
        data_dir=str(data_dir),
        poll_interval=0.1,
        directory_timeout=2.0,
        connect_timeout=10.0,
        request_timeout=10.0,
        close_timeout=1.0,
    )


# Test markers for categorizing tests
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Tests that spawn the fixture server")
    config.addinivalue_line("markers", "slow: Slow running tests")
