"""
Target option model.

Parses the raw JSON option bag attached to a target into `TargetOptions` and
decides, in one place, whether the target is reached through a local Docker
socket or through a secure tunnel to a remote host.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from daytona_provider.errors import EndpointUnreachable, MalformedOptions

DEFAULT_SOCK_PATH = "/var/run/docker.sock"
DEFAULT_WORKSPACE_DATA_DIR = "/tmp/daytona-data"
LOCAL_TARGET_PREDICATE = "^local$"


class TargetOptions(BaseModel):
    """Options of a single target, keyed by their user-facing names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remote_hostname: str | None = Field(default=None, alias="Remote Hostname")
    remote_port: int | None = Field(default=None, alias="Remote Port")
    remote_user: str | None = Field(default=None, alias="Remote User")
    remote_password: str | None = Field(default=None, alias="Remote Password")
    remote_private_key: str | None = Field(
        default=None, alias="Remote Private Key Path"
    )
    sock_path: str | None = Field(default=None, alias="Sock Path")
    workspace_data_dir: str | None = Field(default=None, alias="Workspace Data Dir")

    @property
    def has_remote_fields(self) -> bool:
        return any(
            value is not None
            for value in (
                self.remote_hostname,
                self.remote_port,
                self.remote_user,
                self.remote_password,
                self.remote_private_key,
            )
        )

    def to_target(self) -> "LocalTarget | RemoteTarget":
        """
        Decide how the target is reached.

        Raises
        ------
        EndpointUnreachable
            If remote fields are only partially set, or if no remote field and
            no socket path is set.
        """
        if self.has_remote_fields:
            missing = [
                name
                for name, value in (
                    ("Remote Hostname", self.remote_hostname),
                    ("Remote Port", self.remote_port),
                    ("Remote User", self.remote_user),
                )
                if value is None
            ]
            if self.remote_password is None and self.remote_private_key is None:
                missing.append("Remote Password or Remote Private Key Path")
            if missing:
                raise EndpointUnreachable(
                    f"incomplete remote target, missing: {', '.join(missing)}"
                )
            assert self.remote_hostname is not None
            assert self.remote_port is not None
            assert self.remote_user is not None
            return RemoteTarget(
                hostname=self.remote_hostname,
                port=self.remote_port,
                username=self.remote_user,
                password=self.remote_password,
                private_key_path=self.remote_private_key,
                workspace_data_dir=self.workspace_data_dir
                or DEFAULT_WORKSPACE_DATA_DIR,
            )

        if self.sock_path:
            return LocalTarget(socket_path=self.sock_path)

        raise EndpointUnreachable(
            "target options define neither a socket path nor a remote host"
        )


@dataclass(frozen=True)
class LocalTarget:
    socket_path: str = DEFAULT_SOCK_PATH


@dataclass(frozen=True)
class RemoteTarget:
    hostname: str
    port: int
    username: str
    password: str | None
    private_key_path: str | None
    workspace_data_dir: str = DEFAULT_WORKSPACE_DATA_DIR

    def __repr__(self) -> str:
        # Keep passwords out of logs and tracebacks
        return (
            f"RemoteTarget(hostname={self.hostname!r}, port={self.port}, "
            f"username={self.username!r}, "
            f"auth={'key' if self.private_key_path else 'password'})"
        )


def parse_target_options(raw: str | Mapping[str, Any]) -> TargetOptions:
    """
    Parse a target's JSON option bag.

    Parameters
    ----------
    raw
        The options as a JSON string or an already decoded mapping.

    Raises
    ------
    MalformedOptions
        If the JSON is invalid, not an object, or a field has the wrong type.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedOptions(f"target options are not valid JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise MalformedOptions(
            f"target options must be a JSON object, got {type(data).__name__}"
        )

    try:
        return TargetOptions.model_validate(data)
    except ValidationError as e:
        raise MalformedOptions(f"invalid target options: {e}") from e


# --- Manifest ---


class TargetProperty(BaseModel):
    """Describes one option so a form renderer can present it."""

    type: Literal["string", "int"]
    default_value: str = ""
    description: str = ""
    input_masked: bool = False
    disabled_predicate: str | None = Field(
        default=None,
        description="Regex on the target name; the property is hidden when it "
        "matches.",
    )


def get_target_manifest() -> dict[str, TargetProperty]:
    return {
        "Remote Hostname": TargetProperty(
            type="string",
            default_value="localhost",
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Remote Port": TargetProperty(
            type="int",
            default_value="2223",
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Remote User": TargetProperty(
            type="string",
            default_value="Docker",
            description="Note: non-root user required",
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Remote Password": TargetProperty(
            type="string",
            default_value="daytona123",
            input_masked=True,
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Remote Private Key Path": TargetProperty(
            type="string",
            description="Takes precedence over the password when both are set.",
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Workspace Data Dir": TargetProperty(
            type="string",
            default_value=DEFAULT_WORKSPACE_DATA_DIR,
            description="Directory on the remote host holding workspace data.",
            disabled_predicate=LOCAL_TARGET_PREDICATE,
        ),
        "Sock Path": TargetProperty(
            type="string",
            default_value=DEFAULT_SOCK_PATH,
        ),
    }


def target_property_disabled(prop: TargetProperty, target_name: str) -> bool:
    """Whether `prop` is hidden for a target called `target_name`."""
    if prop.disabled_predicate is None:
        return False
    return re.search(prop.disabled_predicate, target_name) is not None
