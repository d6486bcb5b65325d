"""
Endpoint resolution.

Turns a target's options into a ready-to-use Docker client, either bound to
the local socket or to a forwarding socket backed by a `SecureTunnel`.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any, Self

import docker
from docker import DockerClient
from docker.errors import DockerException
from loguru import logger

from daytona_provider.errors import ConnectionFailed
from daytona_provider.targets import (
    LocalTarget,
    RemoteTarget,
    TargetOptions,
    parse_target_options,
)
from daytona_provider.tunnel import SecureTunnel, open_tunnel

TunnelFactory = Callable[..., SecureTunnel]
ClientFactory = Callable[[str], DockerClient]


def _docker_client_for(base_url: str) -> DockerClient:
    return docker.DockerClient(base_url=base_url)


@dataclass
class DockerEndpoint:
    """
    A Docker client plus whatever it needs to stay connected.

    The endpoint exclusively owns its tunnel; `close()` releases both.
    """

    client: DockerClient
    target: LocalTarget | RemoteTarget
    tunnel: SecureTunnel | None = None

    @property
    def is_local(self) -> bool:
        return isinstance(self.target, LocalTarget)

    def close(self) -> None:
        try:
            self.client.close()
        finally:
            if self.tunnel is not None:
                self.tunnel.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def resolve_endpoint(
    options: TargetOptions | str | Mapping[str, Any],
    scratch_dir: Path,
    *,
    tunnel_factory: TunnelFactory = open_tunnel,
    client_factory: ClientFactory = _docker_client_for,
) -> DockerEndpoint:
    """
    Return a Docker endpoint for the given target options.

    Parameters
    ----------
    options
        Parsed options, or the raw JSON / mapping to parse.
    scratch_dir
        Directory in which forwarding sockets are created.

    Raises
    ------
    MalformedOptions
        If raw options cannot be parsed.
    EndpointUnreachable
        If the options describe neither a local socket nor a complete remote.
    AuthenticationFailed, ConnectionFailed
        If the tunnel to a remote target cannot be established.
    """
    if not isinstance(options, TargetOptions):
        options = parse_target_options(options)

    match options.to_target():
        case LocalTarget(socket_path=socket_path) as target:
            logger.trace(f"Using local Docker socket {socket_path}")
            return DockerEndpoint(
                client=_create_client(client_factory, f"unix://{socket_path}"),
                target=target,
            )
        case RemoteTarget() as target:
            tunnel = tunnel_factory(
                target.hostname,
                target.port,
                target.username,
                password=target.password,
                private_key_path=target.private_key_path,
                scratch_dir=scratch_dir,
            )
            try:
                client = _create_client(
                    client_factory, f"unix://{tunnel.socket_path}"
                )
            except BaseException:
                tunnel.close()
                raise
            return DockerEndpoint(client=client, target=target, tunnel=tunnel)


def _create_client(client_factory: ClientFactory, base_url: str) -> DockerClient:
    try:
        return client_factory(base_url)
    except DockerException as e:
        raise ConnectionFailed(
            f"could not create Docker client for {base_url}: {e}"
        ) from e
