"""Shared test fixtures and utilities."""

import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from daytona_provider.config import InitializeProviderRequest, ProviderContext
from daytona_provider.models import Project, ProjectRequest

LOCAL_OPTIONS = '{"Sock Path": "/var/run/docker.sock"}'
REMOTE_OPTIONS = (
    '{"Remote Hostname": "docker.example.com", "Remote Port": 2223, '
    '"Remote User": "daytona", "Remote Password": "secret", '
    '"Workspace Data Dir": "/srv/daytona"}'
)


@pytest.fixture
def scratch_root() -> Generator[Path, None, None]:
    """
    A short temp directory for forwarding sockets.

    Unix socket paths are limited to ~100 characters, which pytest's
    `tmp_path` can exceed.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="dp-") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def init_request(tmp_path: Path) -> InitializeProviderRequest:
    return InitializeProviderRequest(
        base_path=str(tmp_path / "workspaces"),
        daytona_download_url="https://download.daytona.io/daytona/install.sh",
        daytona_version="0.30.0",
        server_url="https://server.daytona.example",
        api_url="https://api.daytona.example",
        logs_dir=str(tmp_path / "logs"),
        api_port=3986,
        server_port=3987,
    )


@pytest.fixture
def provider_context(
    init_request: InitializeProviderRequest, scratch_root: Path
) -> ProviderContext:
    return ProviderContext.initialize(init_request, scratch_root=scratch_root)


class ProjectFactory:
    """Factory for creating test projects and requests."""

    def create_project(
        self,
        name: str = "api",
        workspace_id: str = "ws1",
        target: str = "local",
        env_vars: dict[str, str] | None = None,
    ) -> Project:
        return Project(
            name=name,
            workspace_id=workspace_id,
            target=target,
            image="example/api:1.0",
            user="daytona",
            api_key="key-123",
            env_vars=env_vars
            if env_vars is not None
            else {"DAYTONA_SERVER_URL": "https://server.daytona.example"},
        )

    def create_request(
        self,
        name: str = "api",
        workspace_id: str = "ws1",
        target_options: str = LOCAL_OPTIONS,
        log_sink: object | None = None,
        builder_image: str | None = None,
    ) -> ProjectRequest:
        target = "local" if target_options == LOCAL_OPTIONS else "remote"
        return ProjectRequest(
            project=self.create_project(
                name=name, workspace_id=workspace_id, target=target
            ),
            target_options=target_options,
            log_sink=log_sink,
            builder_image=builder_image,
        )


@pytest.fixture
def project_factory() -> ProjectFactory:
    return ProjectFactory()
