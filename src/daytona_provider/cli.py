from pathlib import Path
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from loguru import logger
from rich.console import Console
from rich.table import Table

from daytona_provider.config import InitializeProviderRequest, ProviderContext
from daytona_provider.errors import ProviderError
from daytona_provider.logging_config import setup_cli_logging, setup_provider_logging
from daytona_provider.models import ProjectRequest
from daytona_provider.provider import DockerProvider
from daytona_provider.targets import target_property_disabled
from daytona_provider.version import provider_version

app = cyclopts.App(
    help="Daytona Docker provider: provision projects on local or remote Docker.",
    version=provider_version(),
)
project_app = cyclopts.App(name="project", help="Project lifecycle operations.")
app.command(project_app)

InitFile = Annotated[
    Path,
    Parameter(help="JSON file holding the provider initialization values."),
]
RequestFile = Annotated[
    Path,
    Parameter(help="JSON file holding the project request."),
]
JsonLogs = Annotated[
    bool,
    Parameter(help="Emit JSON log records, as the provider plugin does."),
]


def _setup_logging(json_logs: bool) -> None:
    if json_logs:
        setup_provider_logging()
    else:
        setup_cli_logging()


def _load_provider(init_file: Path) -> DockerProvider:
    request = InitializeProviderRequest.model_validate_json(
        init_file.read_text(encoding="utf-8")
    )
    return DockerProvider(ProviderContext.initialize(request), follow_logs=False)


def _load_request(request_file: Path) -> ProjectRequest:
    return ProjectRequest.model_validate_json(request_file.read_text(encoding="utf-8"))


def _run(action: str, init_file: Path, request_file: Path, json_logs: bool) -> None:
    _setup_logging(json_logs)
    provider = _load_provider(init_file)
    request = _load_request(request_file)
    operation = {
        "start": provider.create_and_start_project,
        "stop": provider.stop_project,
        "destroy": provider.destroy_project,
    }[action]
    try:
        operation(request)
    except ProviderError as e:
        logger.error(f"❌ {e.__class__.__name__}: {e}")
        raise SystemExit(1) from e
    logger.success(f"✅ Project {request.project.name}: {action} done.")


@app.command
def manifest(
    *,
    target: Annotated[
        str | None,
        Parameter(help="Only show the options enabled for this target name."),
    ] = None,
) -> None:
    """Show the options a target accepts."""
    table = Table(title="Target options")
    table.add_column("Option", style="bold cyan")
    table.add_column("Type")
    table.add_column("Default")
    table.add_column("Description")

    for name, prop in DockerProvider.get_target_manifest().items():
        if target is not None and target_property_disabled(prop, target):
            continue
        default = "****" if prop.input_masked else prop.default_value
        table.add_row(name, prop.type, default, prop.description)

    Console().print(table)


@app.command
def targets() -> None:
    """Show the preset targets."""
    console = Console()
    for preset in DockerProvider.get_preset_targets():
        console.print(f"[bold]{preset.name}[/bold]")
        console.print(preset.options)


@app.command
def requirements() -> None:
    """Check that Docker is installed and running."""
    table = Table(title="Requirements")
    table.add_column("Requirement", style="bold cyan")
    table.add_column("Met")
    table.add_column("Reason")

    statuses = DockerProvider.check_requirements()
    for status in statuses:
        table.add_row(
            status.name, "[green]yes[/]" if status.met else "[red]no[/]", status.reason
        )
    Console().print(table)

    if not all(status.met for status in statuses):
        raise SystemExit(1)


@project_app.command
def start(
    request_file: RequestFile, *, init: InitFile, json_logs: JsonLogs = False
) -> None:
    """Create and start a project, waiting for its agent."""
    _run("start", init, request_file, json_logs)


@project_app.command
def stop(
    request_file: RequestFile, *, init: InitFile, json_logs: JsonLogs = False
) -> None:
    """Stop a project's container."""
    _run("stop", init, request_file, json_logs)


@project_app.command
def destroy(
    request_file: RequestFile, *, init: InitFile, json_logs: JsonLogs = False
) -> None:
    """Remove a project's container and its data directory."""
    _run("destroy", init, request_file, json_logs)


@project_app.command
def info(
    request_file: RequestFile, *, init: InitFile, json_logs: JsonLogs = False
) -> None:
    """Show whether a project's container is running."""
    _setup_logging(json_logs)
    provider = _load_provider(init)
    request = _load_request(request_file)
    try:
        project_info = provider.get_project_info(request)
    except ProviderError as e:
        logger.error(f"❌ {e.__class__.__name__}: {e}")
        raise SystemExit(1) from e
    Console().print_json(project_info.model_dump_json())


if __name__ == "__main__":
    app()
