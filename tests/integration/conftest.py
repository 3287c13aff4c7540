"""
Integration test configuration and fixtures.
"""

import pytest

import docker
from docker.errors import DockerException


def pytest_configure(config):
    """Configure integration test markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "docker: mark test as requiring Docker")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark integration tests."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        if "docker" in str(item.fspath) or "docker" in item.name.lower():
            item.add_marker(pytest.mark.docker)


@pytest.fixture(scope="session")
def docker_available():
    """Check if Docker is available for testing."""
    try:
        client = docker.from_env()
        client.ping()
        return True
    except DockerException:
        return False


@pytest.fixture(scope="session")
def docker_client(docker_available):
    """Provide Docker client for integration tests."""
    if not docker_available:
        pytest.skip("Docker not available")

    return docker.from_env()
