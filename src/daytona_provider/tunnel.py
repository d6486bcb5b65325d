"""
Secure tunnel to a remote Docker daemon.

A `SecureTunnel` authenticates to the remote host over SSH (paramiko) and
exposes the remote Docker socket as a local unix socket under the scratch
directory. Every local connection is relayed through its own SSH channel
running `docker system dial-stdio`, the same transport docker-py uses for
`ssh://` hosts.
"""

import os
import shlex
import socket
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from types import TracebackType
from typing import Any, Self

import paramiko
from loguru import logger

from daytona_provider.config import settings
from daytona_provider.errors import AuthenticationFailed, ConnectionFailed

CONNECT_TIMEOUT = 15.0
_ACCEPT_POLL_INTERVAL = 0.5
_CHUNK_SIZE = 32 * 1024


def allocate_socket_path(scratch_dir: Path) -> Path:
    """Return a fresh forwarding socket path, unique per call."""
    return scratch_dir / f"{uuid.uuid4().hex}.sock"


def dial_stdio_command(remote_socket_path: str) -> str:
    return (
        f"DOCKER_HOST={shlex.quote('unix://' + remote_socket_path)} "
        "docker system dial-stdio"
    )


class SecureTunnel:
    """
    Owns one SSH session and the local forwarding socket bound to it.

    Use `open_tunnel` to create an open tunnel. Always release it with
    `close()` (or a `with` block), including on error paths.
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        username: str,
        *,
        password: str | None = None,
        private_key_path: str | None = None,
        scratch_dir: Path,
        remote_socket_path: str | None = None,
        ssh_client_factory: Callable[[], Any] = paramiko.SSHClient,
    ) -> None:
        self.hostname = hostname
        self.port = port
        self.username = username
        self._password = password
        self._private_key_path = private_key_path
        self._scratch_dir = scratch_dir
        self.remote_socket_path = remote_socket_path or settings.remote_docker_socket
        self._ssh_client_factory = ssh_client_factory

        self.socket_path: Path | None = None
        self._ssh: Any = None
        self._server: socket.socket | None = None
        self._channels: set[Any] = set()
        self._lock = threading.Lock()
        self._closed = threading.Event()

    # ----------------------- Lifecycle ----------------------------------------

    def open(self) -> Self:
        """
        Authenticate and start forwarding.

        Raises
        ------
        AuthenticationFailed
            If the remote host rejects the credentials.
        ConnectionFailed
            If the host is unreachable or the local socket cannot be bound.
        """
        self._connect()
        try:
            self._listen()
        except OSError as e:
            self.close()
            raise ConnectionFailed(
                f"could not bind forwarding socket in {self._scratch_dir}: {e}"
            ) from e
        logger.debug(
            f"Tunnel to {self.username}@{self.hostname}:{self.port} "
            f"forwarding {self.socket_path} -> {self.remote_socket_path}"
        )
        return self

    def close(self) -> None:
        """Stop forwarding, end the SSH session and remove the socket file."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            channels = list(self._channels)
            self._channels.clear()

        if self._server is not None:
            self._server.close()
        for channel in channels:
            channel.close()
        if self._ssh is not None:
            self._ssh.close()
        if self.socket_path is not None:
            self.socket_path.unlink(missing_ok=True)
            logger.debug(f"Tunnel closed, removed {self.socket_path}")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # ----------------------- Remote commands ----------------------------------

    def run(self, command: str) -> tuple[int, str, str]:
        """
        Execute a shell command on the remote host.

        Returns
        -------
        A tuple containing (exit_code, stdout, stderr).
        """
        if self._ssh is None or self.closed:
            raise ConnectionFailed("tunnel is not open")
        logger.debug(f"Executing on {self.hostname}: {command}")
        try:
            _, stdout, stderr = self._ssh.exec_command(command)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectionFailed(
                f"command failed on {self.hostname}: {e}"
            ) from e
        return exit_code, out, err

    # ----------------------- Internals ----------------------------------------

    def _connect(self) -> None:
        client = self._ssh_client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: dict[str, Any] = {
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        # The private key wins when both credentials are configured
        if self._private_key_path:
            connect_kwargs["key_filename"] = os.path.expanduser(
                self._private_key_path
            )
        else:
            connect_kwargs["password"] = self._password

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationFailed(
                f"authentication to {self.username}@{self.hostname}:{self.port} "
                f"failed: {e}"
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionFailed(
                f"could not connect to {self.hostname}:{self.port}: {e}"
            ) from e
        self._ssh = client

    def _listen(self) -> None:
        path = allocate_socket_path(self._scratch_dir)
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(str(path))
            server.listen()
        except OSError:
            server.close()
            path.unlink(missing_ok=True)
            raise
        # Polling lets close() stop the loop without relying on accept() waking up
        server.settimeout(_ACCEPT_POLL_INTERVAL)
        self._server = server
        self.socket_path = path

        threading.Thread(
            target=self._accept_loop,
            name=f"tunnel-accept-{path.stem[:8]}",
            daemon=True,
        ).start()

    def _accept_loop(self) -> None:
        assert self._server is not None
        while not self._closed.is_set():
            try:
                conn, _ = self._server.accept()
            except TimeoutError:
                continue
            except OSError:
                # Server socket closed
                break
            conn.settimeout(None)
            threading.Thread(target=self._relay, args=(conn,), daemon=True).start()

    def _open_channel(self) -> Any:
        transport = self._ssh.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH transport is not active")
        channel = transport.open_session()
        channel.exec_command(dial_stdio_command(self.remote_socket_path))
        return channel

    def _relay(self, conn: socket.socket) -> None:
        try:
            channel = self._open_channel()
        except (paramiko.SSHException, OSError) as e:
            logger.warning(f"Could not open forwarding channel to {self.hostname}: {e}")
            conn.close()
            return

        with self._lock:
            if self._closed.is_set():
                channel.close()
                conn.close()
                return
            self._channels.add(channel)

        downstream = threading.Thread(
            target=_pump_remote_to_local, args=(channel, conn), daemon=True
        )
        downstream.start()
        _pump_local_to_remote(conn, channel)
        downstream.join()

        with self._lock:
            self._channels.discard(channel)
        channel.close()
        conn.close()


def _pump_local_to_remote(conn: socket.socket, channel: Any) -> None:
    try:
        while True:
            data = conn.recv(_CHUNK_SIZE)
            if not data:
                break
            channel.sendall(data)
    except OSError as e:
        logger.trace(f"Local side of relay ended: {e}")
    finally:
        channel.shutdown_write()


def _pump_remote_to_local(channel: Any, conn: socket.socket) -> None:
    try:
        while True:
            data = channel.recv(_CHUNK_SIZE)
            if not data:
                break
            conn.sendall(data)
    except OSError as e:
        logger.trace(f"Remote side of relay ended: {e}")
    finally:
        try:
            conn.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.trace(f"Local connection already closed: {e}")


def open_tunnel(
    hostname: str,
    port: int,
    username: str,
    *,
    password: str | None = None,
    private_key_path: str | None = None,
    scratch_dir: Path,
    remote_socket_path: str | None = None,
    ssh_client_factory: Callable[[], Any] = paramiko.SSHClient,
) -> SecureTunnel:
    """Open a tunnel and return it; the caller must close it."""
    return SecureTunnel(
        hostname,
        port,
        username,
        password=password,
        private_key_path=private_key_path,
        scratch_dir=scratch_dir,
        remote_socket_path=remote_socket_path,
        ssh_client_factory=ssh_client_factory,
    ).open()
