"""
Centralized Logging Configuration for the Daytona provider.

The provider runs as a plugin child process whose stderr is read by the
Daytona server, so records are emitted as serialized JSON on stderr.
"""

import sys
from typing import Any

from loguru import logger

from daytona_provider.config import settings


def setup_provider_logging(level: str | None = None) -> None:
    """
    Configure logging for the provider process.

    Sets up:
    - JSON records on stderr at the configured level
    - Empty workspace/project context, filled in by `get_project_logger`
    """
    # Remove default handler first
    logger.remove()

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": level or settings.log_level,
                "serialize": True,
                "enqueue": True,  # Thread-safe
                "backtrace": True,
                "diagnose": False,
            },
        ],
        extra={"workspace_id": "-", "project_name": "-"},
    )


def setup_cli_logging(level: str = "INFO") -> None:
    """Human-friendly stderr logging for the operator CLI."""
    logger.remove()
    logger.add(sys.stderr, level=level, format="<level>{message}</level>")


def get_project_logger(workspace_id: str, project_name: str) -> Any:
    """Get a logger bound with project context."""
    return logger.bind(workspace_id=workspace_id, project_name=project_name)
