"""
Docker provider: lifecycle operations for Daytona workspaces and projects.

Each operation resolves its own Docker endpoint from the request's target
options and releases it (including any secure tunnel) before returning,
whatever the outcome. Failures are not rolled back; callers clean up with
an explicit destroy, which is idempotent.
"""

import json
import posixpath
import shlex
import shutil
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from docker import DockerClient
from docker.errors import DockerException
from docker.models.containers import Container
from loguru import logger

from daytona_provider import errors
from daytona_provider.config import ProviderContext, settings
from daytona_provider.docker.agent import await_agent_ready, get_project_start_script
from daytona_provider.docker.manager import (
    PROJECT_IMAGE_LABEL,
    PROJECT_LABEL,
    DockerManager,
)
from daytona_provider.endpoint import DockerEndpoint, resolve_endpoint
from daytona_provider.lifecycle import ProjectState
from daytona_provider.logging_config import get_project_logger
from daytona_provider.logs import (
    FanOutSink,
    InfoLogSink,
    LogSink,
    ProjectFileLogSink,
)
from daytona_provider.models import (
    Project,
    ProjectInfo,
    ProjectRequest,
    ProviderInfo,
    ProviderTarget,
    RequirementStatus,
    Workspace,
    WorkspaceInfo,
    WorkspaceRequest,
)
from daytona_provider.targets import (
    LocalTarget,
    RemoteTarget,
    TargetProperty,
    get_target_manifest,
)
from daytona_provider.version import provider_version

PROVIDER_NAME = "docker-provider"
LOCAL_TARGET_NAME = "local"

EndpointResolver = Callable[[str, Path], DockerEndpoint]
ManagerFactory = Callable[[DockerClient], DockerManager]


@contextmanager
def _operation(
    operation: str, workspace_id: str, project_name: str | None = None
) -> Iterator[None]:
    """Attach operation context to provider errors crossing this boundary."""
    try:
        yield
    except errors.ProviderError as e:
        e.add_context(
            operation=operation,
            workspace_id=workspace_id,
            project_name=project_name,
        )
        logger.error(str(e))
        raise


class DockerProvider:
    """Provisions Daytona projects as containers on a local or remote Docker."""

    def __init__(
        self,
        context: ProviderContext,
        *,
        resolver: EndpointResolver = resolve_endpoint,
        manager_factory: ManagerFactory = DockerManager,
        follow_logs: bool = True,
    ) -> None:
        self._context = context
        self._resolver = resolver
        self._manager_factory = manager_factory
        self._follow_logs = follow_logs

    # ----------------------- Provider metadata --------------------------------

    @staticmethod
    def get_info() -> ProviderInfo:
        return ProviderInfo(
            name=PROVIDER_NAME, label="Docker", version=provider_version()
        )

    @staticmethod
    def get_target_manifest() -> dict[str, TargetProperty]:
        return get_target_manifest()

    @classmethod
    def get_preset_targets(cls) -> list[ProviderTarget]:
        return [
            ProviderTarget(
                name=LOCAL_TARGET_NAME,
                provider_info=cls.get_info(),
                options='{\n\t"Sock Path": "/var/run/docker.sock"\n}',
            )
        ]

    @staticmethod
    def check_requirements() -> list[RequirementStatus]:
        results: list[RequirementStatus] = []

        if shutil.which("docker") is None:
            results.append(
                RequirementStatus(
                    name="Docker installed",
                    met=False,
                    reason="Docker is not installed",
                )
            )
            return results
        results.append(
            RequirementStatus(
                name="Docker installed", met=True, reason="Docker is installed"
            )
        )

        try:
            DockerManager.get_client(settings.docker_host).close()
        except DockerException as e:
            results.append(
                RequirementStatus(
                    name="Docker running",
                    met=False,
                    reason=f"Docker is not running. Error: {e.__cause__ or e}",
                )
            )
        else:
            results.append(
                RequirementStatus(
                    name="Docker running", met=True, reason="Docker is running"
                )
            )
        return results

    # ----------------------- Workspaces ---------------------------------------

    def start_workspace(self, request: WorkspaceRequest) -> None:
        logger.debug(f"Workspace {request.workspace.id} start: nothing to do.")

    def stop_workspace(self, request: WorkspaceRequest) -> None:
        logger.debug(f"Workspace {request.workspace.id} stop: nothing to do.")

    def destroy_workspace(self, request: WorkspaceRequest) -> None:
        """Removes the workspace's host-side directory."""
        workspace = request.workspace
        with _operation("destroy_workspace", workspace.id):
            with self._endpoint(request.target_options) as endpoint:
                self._remove_host_dir(
                    endpoint, self._workspace_dir(workspace, endpoint)
                )
            logger.info(f"Workspace {workspace.id} destroyed.")

    def get_workspace_info(self, request: WorkspaceRequest) -> WorkspaceInfo:
        workspace = request.workspace
        with _operation("get_workspace_info", workspace.id):
            with self._endpoint(request.target_options) as endpoint:
                manager = self._manager_factory(endpoint.client)
                try:
                    containers = manager.list_workspace_containers(workspace.id)
                    projects = [self._project_info(c) for c in containers]
                except DockerException as e:
                    raise errors.ConnectionFailed(
                        f"could not list workspace containers: {e}"
                    ) from e
        return WorkspaceInfo(
            name=workspace.name,
            projects=projects,
            provider_metadata=json.dumps({"containers": len(projects)}),
        )

    # ----------------------- Projects -----------------------------------------

    def create_and_start_project(self, request: ProjectRequest) -> None:
        """
        Creates the project's container, starts it and waits for the agent.

        Raises
        ------
        ContainerCreateFailed, ContainerStartFailed, AgentBootstrapFailed
            Runtime failures, wrapped with the project's context.
        """
        project = request.project
        ws, name = project.workspace_id, project.name
        states = self._context.states
        plog = get_project_logger(ws, name)

        with _operation("create_and_start_project", ws, name):
            states.ensure_can_transition(ws, name, ProjectState.CREATED)
            log_sink = self._project_log_sink(request)
            try:
                with self._endpoint(request.target_options) as endpoint:
                    manager = self._manager_factory(endpoint.client)
                    container_name = manager.get_project_container_name(project)

                    self._create_container(request, endpoint, manager)
                    states.transition(ws, name, ProjectState.CREATED)

                    states.transition(ws, name, ProjectState.STARTING)
                    try:
                        self._start_and_bootstrap(
                            request, endpoint, manager, container_name, log_sink
                        )
                    except BaseException:
                        states.transition(ws, name, ProjectState.FAILED)
                        raise
                    states.transition(ws, name, ProjectState.RUNNING)
            finally:
                log_sink.close()
            plog.info(f"Project {name} is running.")

    def stop_project(self, request: ProjectRequest) -> None:
        project = request.project
        ws, name = project.workspace_id, project.name
        states = self._context.states

        with _operation("stop_project", ws, name):
            previous = states.transition(ws, name, ProjectState.STOPPING)
            try:
                with self._endpoint(request.target_options) as endpoint:
                    manager = self._manager_factory(endpoint.client)
                    container_name = manager.get_project_container_name(project)
                    try:
                        manager.stop_container(container_name)
                    except DockerException as e:
                        raise errors.ContainerStopFailed(
                            f"could not stop container {container_name}: {e}"
                        ) from e
            except BaseException:
                states.restore(ws, name, previous)
                raise
            states.transition(ws, name, ProjectState.STOPPED)
            logger.info(f"Project {ws}/{name} stopped.")

    def destroy_project(self, request: ProjectRequest) -> None:
        """
        Removes the container and the project's host-side directory.

        Destroying a project that is already gone is a no-op.
        """
        project = request.project
        ws, name = project.workspace_id, project.name
        states = self._context.states

        with _operation("destroy_project", ws, name):
            states.ensure_can_transition(ws, name, ProjectState.DESTROYED)
            with self._endpoint(request.target_options) as endpoint:
                manager = self._manager_factory(endpoint.client)
                container_name = manager.get_project_container_name(project)
                try:
                    manager.remove_container(container_name)
                except DockerException as e:
                    raise errors.ContainerDestroyFailed(
                        f"could not remove container {container_name}: {e}"
                    ) from e
                self._remove_host_dir(endpoint, self._project_dir(project, endpoint))
            states.transition(ws, name, ProjectState.DESTROYED)
            logger.info(f"Project {ws}/{name} destroyed.")

    def get_project_info(self, request: ProjectRequest) -> ProjectInfo:
        """
        Raises
        ------
        NotFound
            If the project has no container.
        ConnectionFailed
            If the daemon fails to answer the lookup.
        """
        project = request.project
        with _operation("get_project_info", project.workspace_id, project.name):
            with self._endpoint(request.target_options) as endpoint:
                manager = self._manager_factory(endpoint.client)
                container_name = manager.get_project_container_name(project)
                try:
                    container = manager.get_container(container_name)
                    return self._project_info(container, name=project.name)
                except DockerException as e:
                    raise errors.ConnectionFailed(
                        f"could not inspect container {container_name}: {e}"
                    ) from e

    # ----------------------- Internals ----------------------------------------

    def _endpoint(self, target_options: str) -> DockerEndpoint:
        return self._resolver(target_options, self._context.remote_sock_dir)

    def _project_log_sink(self, request: ProjectRequest) -> FanOutSink:
        project = request.project
        sinks: list[LogSink] = [
            InfoLogSink(workspace_id=project.workspace_id, project_name=project.name)
        ]
        if self._context.logs_dir is not None:
            try:
                sinks.append(
                    ProjectFileLogSink(
                        self._context.logs_dir, project.workspace_id, project.name
                    )
                )
            except OSError as e:
                raise errors.ContainerCreateFailed(
                    f"could not open project log in {self._context.logs_dir}: {e}"
                ) from e
        borrowed = (request.log_sink,) if request.log_sink is not None else ()
        return FanOutSink(*sinks, borrowed=borrowed)

    def _create_container(
        self,
        request: ProjectRequest,
        endpoint: DockerEndpoint,
        manager: DockerManager,
    ) -> Container:
        project = request.project
        image = request.builder_image or settings.builder_image
        project_dir = self._project_dir(project, endpoint)

        self._ensure_host_dir(endpoint, project_dir)
        try:
            manager.pull_image(image, request.builder_container_registry)
            return manager.create_project_container(
                project,
                image,
                env=self._project_env(project, local=endpoint.is_local),
                project_dir=project_dir,
                extra_hosts=(
                    {settings.local_host_alias: "host-gateway"}
                    if endpoint.is_local
                    else None
                ),
            )
        except DockerException as e:
            raise errors.ContainerCreateFailed(
                f"could not create container from {image}: {e}"
            ) from e

    def _start_and_bootstrap(
        self,
        request: ProjectRequest,
        endpoint: DockerEndpoint,
        manager: DockerManager,
        container_name: str,
        log_sink: FanOutSink,
    ) -> None:
        project = request.project
        try:
            manager.start_container(container_name)
        except (DockerException, errors.NotFound) as e:
            raise errors.ContainerStartFailed(
                f"could not start container {container_name}: {e}"
            ) from e

        if self._follow_logs:
            self._attach_container_logs(request, container_name)

        self._context.states.transition(
            project.workspace_id, project.name, ProjectState.BOOTSTRAPPING
        )
        script = get_project_start_script(
            self._download_url(local=endpoint.is_local), project.api_key
        )
        await_agent_ready(
            manager,
            container_name,
            ["bash", "-c", script],
            log_sink,
            user=project.user,
            timeout=settings.agent_start_timeout,
        )

    def _attach_container_logs(
        self, request: ProjectRequest, container_name: str
    ) -> None:
        """Stream the container's logs in the background until it stops."""
        threading.Thread(
            target=self._follow_container_logs,
            args=(request, container_name),
            name=f"logs-{container_name}",
            daemon=True,
        ).start()

    def _follow_container_logs(
        self, request: ProjectRequest, container_name: str
    ) -> None:
        # Owns its own endpoint, the starting request releases its one on return
        try:
            sink = self._project_log_sink(request)
        except errors.ProviderError as e:
            logger.warning(f"Not following logs of {container_name}: {e}")
            return
        try:
            with self._endpoint(request.target_options) as endpoint:
                self._manager_factory(endpoint.client).follow_logs(
                    container_name, sink
                )
        except (errors.ProviderError, DockerException) as e:
            sink.write(f"{e}\n".encode())
        finally:
            sink.close()

    def _project_env(self, project: Project, *, local: bool) -> dict[str, str]:
        env = dict(project.env_vars)
        if local:
            # The agent calls back to the server, which listens on the host
            alias = settings.local_host_alias
            env["DAYTONA_SERVER_URL"] = f"http://{alias}:{self._context.server_port}"
            env["DAYTONA_SERVER_API_URL"] = f"http://{alias}:{self._context.api_port}"
        return env

    def _download_url(self, *, local: bool) -> str:
        url = self._context.daytona_download_url
        if not local:
            return url
        parts = urlsplit(url)
        netloc = f"{settings.local_host_alias}:{self._context.api_port}"
        return urlunsplit(("http", netloc, parts.path, parts.query, parts.fragment))

    def _host_dir(self, endpoint: DockerEndpoint, *parts: str) -> str:
        match endpoint.target:
            case LocalTarget():
                return str(self._context.base_path.joinpath(*parts))
            case RemoteTarget(workspace_data_dir=data_dir):
                # Remote hosts always use / as the separator
                return posixpath.join(data_dir, *parts)

    def _project_dir(self, project: Project, endpoint: DockerEndpoint) -> str:
        return self._host_dir(
            endpoint,
            project.workspace_id,
            f"{project.workspace_id}-{project.name}",
        )

    def _workspace_dir(self, workspace: Workspace, endpoint: DockerEndpoint) -> str:
        return self._host_dir(endpoint, workspace.id)

    def _ensure_host_dir(self, endpoint: DockerEndpoint, path: str) -> None:
        if endpoint.tunnel is None:
            try:
                Path(path).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise errors.ContainerCreateFailed(
                    f"could not create {path}: {e}"
                ) from e
            return
        exit_code, _, stderr = endpoint.tunnel.run(f"mkdir -p {shlex.quote(path)}")
        if exit_code != 0:
            raise errors.ContainerCreateFailed(
                f"could not create {path} on remote host: {stderr.strip()}"
            )

    def _remove_host_dir(self, endpoint: DockerEndpoint, path: str) -> None:
        if endpoint.tunnel is None:
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                logger.debug(f"{path} already removed.")
            except OSError as e:
                raise errors.ContainerDestroyFailed(
                    f"could not remove {path}: {e}"
                ) from e
            return
        exit_code, _, stderr = endpoint.tunnel.run(f"rm -rf {shlex.quote(path)}")
        if exit_code != 0:
            raise errors.ContainerDestroyFailed(
                f"could not remove {path} on remote host: {stderr.strip()}"
            )

    def _project_info(
        self, container: Container, name: str | None = None
    ) -> ProjectInfo:
        attrs = container.attrs
        labels = attrs.get("Config", {}).get("Labels") or {}
        return ProjectInfo(
            name=name or labels.get(PROJECT_LABEL, container.name),
            is_running=bool(attrs.get("State", {}).get("Running", False)),
            created=attrs.get("Created", ""),
            provider_metadata=json.dumps(
                {
                    "container_id": container.id,
                    "status": attrs.get("State", {}).get("Status", ""),
                    "image": attrs.get("Config", {}).get("Image", ""),
                    "project_image": labels.get(PROJECT_IMAGE_LABEL, ""),
                }
            ),
        )
