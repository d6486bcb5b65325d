from typing import cast

import pytest
from docker import DockerClient
from docker.errors import APIError

from daytona_provider import errors
from daytona_provider.docker.manager import (
    PROJECT_IMAGE_LABEL,
    PROJECT_LABEL,
    WORKSPACE_LABEL,
    DockerManager,
)
from daytona_provider.models import ContainerRegistry
from tests.conftest import ProjectFactory
from tests.utils import (
    BufferSink,
    FakeAPI,
    FakeContainer,
    FakeContainers,
    FakeDockerClient,
    FakeImages,
    ScriptedExec,
)

IMAGE = "daytonaio/workspace-project:latest"


def make_manager(
    images: FakeImages | None = None,
    containers: FakeContainers | None = None,
    api: FakeAPI | None = None,
) -> DockerManager:
    return DockerManager(
        client=cast(
            DockerClient,
            FakeDockerClient(images=images, containers=containers, api=api),
        )
    )


@pytest.mark.unit
def test_container_name_is_slug_of_workspace_and_project(
    project_factory: ProjectFactory,
) -> None:
    project = project_factory.create_project(name="My API", workspace_id="WS_1")
    assert DockerManager.get_project_container_name(project) == "ws-1-my-api"


@pytest.mark.unit
def test_pull_image_skips_present_image() -> None:
    images = FakeImages(existing={IMAGE})
    manager = make_manager(images=images)

    manager.pull_image(IMAGE)

    assert images.pulled == []


@pytest.mark.unit
def test_pull_image_passes_registry_credentials() -> None:
    images = FakeImages()
    manager = make_manager(images=images)
    registry = ContainerRegistry(
        server="registry.example.com", username="bot", password="token"
    )

    manager.pull_image("registry.example.com/team/image:1", registry)

    assert images.pulled == [
        (
            "registry.example.com/team/image:1",
            {
                "username": "bot",
                "password": "token",
                "serveraddress": "registry.example.com",
            },
        )
    ]


@pytest.mark.unit
def test_create_project_container(project_factory: ProjectFactory) -> None:
    containers = FakeContainers()
    manager = make_manager(containers=containers)
    project = project_factory.create_project()

    container = manager.create_project_container(
        project,
        IMAGE,
        env={"A": "1"},
        project_dir="/data/ws1/ws1-api",
        extra_hosts={"host.docker.internal": "host-gateway"},
    )

    assert container.name == "ws1-api"
    (created,) = containers.created
    assert created["image"] == IMAGE
    assert created["hostname"] == "api"
    assert created["labels"] == {
        WORKSPACE_LABEL: "ws1",
        PROJECT_LABEL: "api",
        PROJECT_IMAGE_LABEL: "example/api:1.0",
    }
    assert created["environment"] == {"A": "1"}
    assert created["volumes"] == {
        "/data/ws1/ws1-api": {"bind": "/home/daytona/api", "mode": "rw"}
    }
    assert created["extra_hosts"] == {"host.docker.internal": "host-gateway"}
    assert created["privileged"] is True


@pytest.mark.unit
def test_create_project_container_reuses_existing(
    project_factory: ProjectFactory,
) -> None:
    existing = FakeContainer("ws1-api", status="exited")
    containers = FakeContainers(existing)
    manager = make_manager(containers=containers)

    container = manager.create_project_container(
        project_factory.create_project(), IMAGE, env={}, project_dir="/data"
    )

    assert container is existing
    assert containers.created == []


@pytest.mark.unit
def test_start_container_starts_once() -> None:
    container = FakeContainer("ws1-api")
    manager = make_manager(containers=FakeContainers(container))

    manager.start_container("ws1-api")
    manager.start_container("ws1-api")

    assert container.status == "running"
    assert container.start_calls == 1


@pytest.mark.unit
def test_stop_container_leaves_stopped_container_alone() -> None:
    running = FakeContainer("ws1-api", status="running")
    exited = FakeContainer("ws1-web", status="exited")
    manager = make_manager(containers=FakeContainers(running, exited))

    manager.stop_container("ws1-api")
    manager.stop_container("ws1-web")

    assert running.stop_calls == 1
    assert exited.stop_calls == 0


@pytest.mark.unit
def test_get_missing_container_raises_not_found() -> None:
    manager = make_manager()

    with pytest.raises(errors.NotFound):
        manager.get_container("ws1-api")


@pytest.mark.unit
def test_remove_container_is_idempotent() -> None:
    container = FakeContainer("ws1-api", status="running")
    containers = FakeContainers(container)
    manager = make_manager(containers=containers)

    assert manager.remove_container("ws1-api") is True
    assert manager.remove_container("ws1-api") is False

    assert container.removed_with == {"force": True, "v": True}
    assert "ws1-api" not in containers


@pytest.mark.unit
def test_remove_container_propagates_daemon_errors() -> None:
    containers = FakeContainers(FakeContainer("ws1-api"))
    containers.remove_error = APIError("device or resource busy")
    manager = make_manager(containers=containers)

    with pytest.raises(APIError):
        manager.remove_container("ws1-api")


@pytest.mark.unit
def test_list_workspace_containers_filters_by_label() -> None:
    containers = FakeContainers(
        FakeContainer("ws1-api", labels={WORKSPACE_LABEL: "ws1"}),
        FakeContainer("ws1-web", labels={WORKSPACE_LABEL: "ws1"}),
        FakeContainer("ws2-api", labels={WORKSPACE_LABEL: "ws2"}),
        FakeContainer("unrelated"),
    )
    manager = make_manager(containers=containers)

    names = sorted(c.name for c in manager.list_workspace_containers("ws1"))

    assert names == ["ws1-api", "ws1-web"]


@pytest.mark.unit
def test_exec_stream_forwards_output_and_captures_stderr() -> None:
    api = FakeAPI(
        ScriptedExec(
            [(b"hello\n", None), (None, b"warn: "), (b"world\n", b"oops\n")],
            exit_code=2,
        )
    )
    manager = make_manager(api=api)
    sink = BufferSink()

    exit_code, stderr = manager.exec_stream(
        "ws1-api", ["bash", "-c", "run"], sink, user="daytona"
    )

    assert exit_code == 2
    assert stderr == "warn: oops\n"
    assert sink.text == "hello\nwarn: world\noops\n"
    (call,) = api.exec_calls
    assert call["container"] == "ws1-api"
    assert call["cmd"] == ["bash", "-c", "run"]
    assert call["user"] == "daytona"


@pytest.mark.unit
def test_exec_stream_unknown_exit_code_is_negative() -> None:
    manager = make_manager(api=FakeAPI(ScriptedExec(exit_code=None)))

    exit_code, _ = manager.exec_stream("ws1-api", ["true"], BufferSink())

    assert exit_code == -1


@pytest.mark.unit
def test_follow_logs_writes_every_chunk() -> None:
    container = FakeContainer("ws1-api", log_chunks=[b"one\n", b"two\n"])
    manager = make_manager(containers=FakeContainers(container))
    sink = BufferSink()

    manager.follow_logs("ws1-api", sink)

    assert sink.text == "one\ntwo\n"


@pytest.mark.unit
def test_exec_stream_waits_for_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    class LateExitAPI(FakeAPI):
        def __init__(self) -> None:
            super().__init__(ScriptedExec([(b"done\n", None)]))
            self.inspections = 0

        def exec_inspect(self, exec_id: str) -> dict:
            self.inspections += 1
            if self.inspections < 3:
                return {"Running": True, "ExitCode": None}
            return {"Running": False, "ExitCode": 0}

    monkeypatch.setattr("daytona_provider.docker.manager._EXEC_POLL_INTERVAL", 0)
    api = LateExitAPI()
    manager = make_manager(api=api)

    exit_code, _ = manager.exec_stream("ws1-api", ["true"], BufferSink())

    assert exit_code == 0
    assert api.inspections == 3
