"""
Centralized Configuration Management for the Daytona provider.

This module uses pydantic-settings to manage process-wide settings and
defines the `ProviderContext`, the explicitly constructed object that carries
the values handed over by the Daytona server at initialization.

Settings can be overridden via a `.env` file or by setting environment
variables (e.g., `DAYTONA_PROVIDER_LOG_LEVEL=DEBUG`).
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

from daytona_provider.lifecycle import ProjectStateTracker


class Settings(BaseSettings):
    """
    Defines the provider's configuration settings.
    """

    # --- General Settings ---
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="TRACE",
        description="The minimum level of log records emitted on stderr.",
    )

    # --- Provisioning Settings ---
    builder_image: str = Field(
        default="daytonaio/workspace-project:latest",
        description="Image used to run the agent when the request names none.",
    )
    agent_start_timeout: float | None = Field(
        default=600.0,
        description="Seconds to wait for the agent readiness marker. "
        "None waits indefinitely.",
    )
    local_host_alias: str = Field(
        default="host.docker.internal",
        description="Hostname under which local containers reach the host.",
    )

    # --- Docker Settings ---
    docker_host: str | None = Field(
        default=None,
        description="Docker daemon used by the requirements check "
        "(e.g., 'unix:///var/run/docker.sock'). If None, auto-detected.",
    )
    remote_docker_socket: str = Field(
        default="/var/run/docker.sock",
        description="Docker socket path on remote targets.",
    )
    scratch_dir_name: str = Field(
        default="target-socks",
        description="Name of the temp sub-directory holding forwarding sockets.",
    )

    # --- Pydantic-Settings Configuration ---
    model_config = SettingsConfigDict(
        env_prefix="DAYTONA_PROVIDER_",
        env_file=".env",
        extra="ignore",
        env_file_encoding="utf-8",
    )


# Create a single, importable instance of the settings
settings = Settings()


class InitializeProviderRequest(BaseModel):
    """Values the Daytona server passes to the provider on initialization."""

    base_path: str
    daytona_download_url: str
    daytona_version: str
    server_url: str
    api_url: str
    logs_dir: str | None = None
    api_port: int
    server_port: int


def _temp_root() -> Path:
    if sys.platform == "win32":
        tmp_dir = tempfile.gettempdir()
        if not tmp_dir:
            raise RuntimeError("could not determine temp dir")
        return Path(tmp_dir)
    return Path("/tmp")


class ProviderContext(BaseModel):
    """
    Read-only provider state captured once per process.

    Build it with `ProviderContext.initialize`, which also resets the scratch
    directory used for forwarding sockets, and pass it to the provider.
    """

    model_config = ConfigDict(frozen=True)

    base_path: Path
    daytona_download_url: str
    daytona_version: str
    server_url: str
    api_url: str
    logs_dir: Path | None = None
    api_port: int
    server_port: int
    remote_sock_dir: Path

    _states: ProjectStateTracker = PrivateAttr(default_factory=ProjectStateTracker)

    @classmethod
    def initialize(
        cls,
        request: InitializeProviderRequest,
        *,
        scratch_root: Path | None = None,
    ) -> "ProviderContext":
        """
        Create the context and clear stale forwarding sockets.

        Parameters
        ----------
        request
            The initialization values sent by the server.
        scratch_root
            Parent of the scratch directory. Defaults to the system temp dir.
        """
        remote_sock_dir = (scratch_root or _temp_root()) / settings.scratch_dir_name

        # Clear old sockets
        if remote_sock_dir.exists():
            shutil.rmtree(remote_sock_dir)
        os.makedirs(remote_sock_dir, mode=0o755, exist_ok=True)
        logger.debug(f"Forwarding socket directory reset: {remote_sock_dir}")

        return cls(
            base_path=Path(request.base_path),
            daytona_download_url=request.daytona_download_url,
            daytona_version=request.daytona_version,
            server_url=request.server_url,
            api_url=request.api_url,
            logs_dir=Path(request.logs_dir) if request.logs_dir else None,
            api_port=request.api_port,
            server_port=request.server_port,
            remote_sock_dir=remote_sock_dir,
        )

    @property
    def states(self) -> ProjectStateTracker:
        return self._states
