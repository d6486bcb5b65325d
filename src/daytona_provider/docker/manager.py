"""
Docker Interaction Layer for the Daytona provider.

This module provides a high-level, clean API for managing the containers
that back Daytona projects. It encapsulates the low-level details of the
`docker-py` library; callers hand it a client that is already bound to the
right endpoint (local socket or forwarding socket).
"""

import time
from typing import Protocol

import docker
from docker import DockerClient
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from loguru import logger
from slugify import slugify

from daytona_provider import errors
from daytona_provider.models import ContainerRegistry, Project

WORKSPACE_LABEL = "daytona.workspace.id"
PROJECT_LABEL = "daytona.project.name"
PROJECT_IMAGE_LABEL = "daytona.project.image"

EXEC_EXIT_TIMEOUT = 5.0
_EXEC_POLL_INTERVAL = 0.05


class ByteWriter(Protocol):
    def write(self, data: bytes) -> int: ...


class DockerManager:
    """
    Manages the containers of Daytona projects on a single Docker endpoint.
    """

    @classmethod
    def get_client(cls, docker_host: str | None = None) -> DockerClient:
        """
        Tests the connection to Docker daemon and returns a Docker client.

        Parameters
        ----------
        docker_host
            Daemon URL. If None, the client is configured from the environment.

        Raises
        ------
        DockerException
            If the Docker daemon is not running or cannot be reached.
        """
        try:
            if docker_host:
                client = docker.DockerClient(base_url=docker_host)
            else:
                client = docker.from_env()  # type: ignore[reportUnknownMemberType]

            if not client.ping():  # type: ignore[reportUnknownMemberType]
                raise DockerException(
                    "Docker daemon responded to ping, but in a failed state."
                )
            return client
        except DockerException as e:
            raise DockerException(
                "Docker is not running or is not configured correctly."
            ) from e

    def __init__(self, client: DockerClient) -> None:
        self._client = client

    @staticmethod
    def get_project_container_name(project: Project) -> str:
        return slugify(f"{project.workspace_id}-{project.name}")

    # ----------------------- Images -------------------------------------------

    def image_exists(self, tag: str) -> bool:
        """Check if a Docker image with the given tag exists on the endpoint."""
        try:
            self._client.images.get(tag)
            return True
        except ImageNotFound:
            return False

    def pull_image(self, image: str, registry: ContainerRegistry | None = None) -> None:
        """
        Pulls `image` unless it is already present.

        Parameters
        ----------
        image
            Image reference, e.g. 'daytonaio/workspace-project:latest'.
        registry
            Credentials for the registry hosting the image, if private.
        """
        if self.image_exists(image):
            logger.debug(f"Image {image} already present, skipping pull.")
            return
        logger.info(f"Pulling image {image}...")
        auth_config = registry.auth_config() if registry else None
        self._client.images.pull(  # type: ignore[reportUnknownMemberType]
            image, auth_config=auth_config
        )
        logger.info(f"Pulled image {image}")

    # ----------------------- Containers ---------------------------------------

    def get_container(self, name: str) -> Container:
        """
        Looks up a container by name.

        Raises
        ------
        errors.NotFound
            If no such container exists.
        """
        try:
            return self._client.containers.get(name)
        except NotFound as e:
            raise errors.NotFound(f"container {name} not found") from e

    def create_project_container(
        self,
        project: Project,
        image: str,
        *,
        env: dict[str, str],
        project_dir: str,
        extra_hosts: dict[str, str] | None = None,
    ) -> Container:
        """
        Creates the project's container, or returns it if it already exists.

        Parameters
        ----------
        project
            The project the container belongs to.
        image
            The builder image the container runs.
        env
            Environment injected into the container.
        project_dir
            Host-side directory bind-mounted as the project's home.
        extra_hosts
            Additional /etc/hosts entries (e.g. the host gateway alias).
        """
        name = self.get_project_container_name(project)
        try:
            existing = self._client.containers.get(name)
            logger.debug(f"Container {name} already exists, reusing it.")
            return existing
        except NotFound:
            pass

        mount_target = f"/home/{project.user}/{project.name}"
        logger.debug(f"Creating container {name} from {image}")
        container = self._client.containers.create(
            image,
            name=name,
            hostname=project.name,
            labels=self._project_labels(project),
            environment=env,
            volumes={project_dir: {"bind": mount_target, "mode": "rw"}},
            extra_hosts=extra_hosts or {},
            privileged=True,
            detach=True,
        )
        logger.debug(f"Container {container.short_id} created.")
        return container

    @staticmethod
    def _project_labels(project: Project) -> dict[str, str]:
        labels = {WORKSPACE_LABEL: project.workspace_id, PROJECT_LABEL: project.name}
        if project.image:
            labels[PROJECT_IMAGE_LABEL] = project.image
        return labels

    def start_container(self, name: str) -> Container:
        container = self.get_container(name)
        container.reload()
        if container.status == "running":
            logger.debug(f"Container {name} is already running.")
            return container
        container.start()
        container.reload()
        logger.debug(f"Container {name} started ({container.status}).")
        return container

    def stop_container(self, name: str) -> None:
        """Stops the container; a container that is not running is left as is."""
        container = self.get_container(name)
        container.reload()
        if container.status != "running":
            logger.debug(f"Container {name} is not running ({container.status}).")
            return
        logger.debug(f"Stopping container: {name}")
        container.stop()

    def remove_container(self, name: str) -> bool:
        """
        Force-removes the container and its anonymous volumes.

        Returns
        -------
        False if the container was already gone, True otherwise.
        """
        try:
            container = self._client.containers.get(name)
            container.remove(force=True, v=True)
        except NotFound:
            logger.debug(f"Container {name} already removed.")
            return False
        logger.debug(f"Container {name} removed.")
        return True

    def list_workspace_containers(self, workspace_id: str) -> list[Container]:
        return self._client.containers.list(
            all=True, filters={"label": f"{WORKSPACE_LABEL}={workspace_id}"}
        )

    # ----------------------- Streams ------------------------------------------

    def exec_stream(
        self,
        container_name: str,
        command: list[str],
        output: ByteWriter,
        *,
        user: str | None = None,
    ) -> tuple[int, str]:
        """
        Runs `command` in the container, streaming stdout and stderr to `output`.

        Returns
        -------
        A tuple containing (exit_code, captured stderr).
        """
        api = self._client.api
        logger.debug(f"Executing in {container_name} as {user or 'default'}: {command}")
        exec_id = api.exec_create(
            container_name, command, stdout=True, stderr=True, user=user or ""
        )["Id"]

        stderr_chunks: list[bytes] = []
        for stdout, stderr in api.exec_start(exec_id, stream=True, demux=True):
            if stdout:
                output.write(stdout)
            if stderr:
                output.write(stderr)
                stderr_chunks.append(stderr)

        exit_code = self._wait_exec_exit(exec_id)
        logger.debug(f"  > Exit code: {exit_code}")
        return (
            exit_code if exit_code is not None else -1,
            b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )

    def _wait_exec_exit(self, exec_id: str) -> int | None:
        # The stream can close before the daemon records the exit code
        api = self._client.api
        deadline = time.monotonic() + EXEC_EXIT_TIMEOUT
        while True:
            info = api.exec_inspect(exec_id)
            if not info.get("Running") or time.monotonic() >= deadline:
                return info.get("ExitCode")
            time.sleep(_EXEC_POLL_INTERVAL)

    def follow_logs(self, container_name: str, output: ByteWriter) -> None:
        """Streams the container's logs into `output` until the container stops."""
        container = self.get_container(container_name)
        for chunk in container.logs(stream=True, follow=True, stdout=True, stderr=True):
            output.write(chunk)
