from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ContainerRegistry(BaseModel):
    server: str
    username: str
    password: str = Field(..., repr=False)

    def auth_config(self) -> dict[str, str]:
        """Credentials in the shape docker-py expects for `pull`."""
        return {
            "username": self.username,
            "password": self.password,
            "serveraddress": self.server,
        }


class Project(BaseModel):
    """A single project (one container) inside a workspace."""

    name: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    target: str = Field(..., description="Name of the target, e.g. 'local'.")
    image: str = Field(
        default="",
        description="The project's own source image, recorded as a container "
        "label. The container itself runs the builder image.",
    )
    user: str = Field(default="daytona", description="User inside the container.")
    api_key: str = Field(default="", repr=False)
    env_vars: dict[str, str] = Field(default_factory=dict)


class Workspace(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    target: str
    projects: list[Project] = Field(default_factory=list)


class ProjectRequest(BaseModel):
    """
    One lifecycle call for a project.

    `target_options` is the raw JSON option bag of the target. `log_sink` is
    an optional byte sink that receives provisioning output in addition to
    the provider's own logs.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    project: Project
    target_options: str
    builder_container_registry: ContainerRegistry | None = None
    builder_image: str | None = None
    log_sink: Any | None = Field(default=None, exclude=True)


class WorkspaceRequest(BaseModel):
    workspace: Workspace
    target_options: str


class ProjectInfo(BaseModel):
    name: str
    is_running: bool
    created: str = Field(..., description="Creation timestamp from the runtime.")
    provider_metadata: str = Field(
        default="{}", description="Opaque JSON metadata blob."
    )


class WorkspaceInfo(BaseModel):
    name: str
    projects: list[ProjectInfo] = Field(default_factory=list)
    provider_metadata: str = "{}"


class ProviderInfo(BaseModel):
    name: str
    label: str | None = None
    version: str


class ProviderTarget(BaseModel):
    name: str
    provider_info: ProviderInfo
    options: str


class RequirementStatus(BaseModel):
    name: str
    met: bool
    reason: str
