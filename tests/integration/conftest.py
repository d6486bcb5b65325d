"""
Shared pytest fixtures for integration tests.

These fixtures talk to the real Docker daemon and skip the requesting tests
when it is not running.
"""

from collections.abc import Generator

import pytest
from docker import DockerClient
from docker.errors import DockerException

from daytona_provider.docker.manager import DockerManager


@pytest.fixture(scope="module")
def docker_client() -> Generator[DockerClient, None, None]:
    """
    Provides a Docker client for integration tests.

    Skips all tests that require this fixture if the Docker daemon is not running.
    """
    try:
        client = DockerManager.get_client()
    except DockerException:
        pytest.skip("Docker daemon is not running. Skipping integration tests.")
    yield client
    client.close()


@pytest.fixture(scope="module")
def docker_manager(docker_client: DockerClient) -> DockerManager:
    return DockerManager(docker_client)
