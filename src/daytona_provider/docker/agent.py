"""
Agent bootstrap and readiness detection.

The agent is started by a bootstrap command executed inside the project
container. Its output is duplicated to the caller's log sink and to a line
scanner, and two watchers race to decide the outcome:

- the completion watcher fails the start when the command exits non-zero;
- the line-scan watcher succeeds as soon as the readiness marker is printed.

The first watcher to produce a signal wins; the other keeps running in the
background and its result is discarded. A clean exit without the marker
produces no signal, so the wait is bounded by a timeout instead.
"""

import queue
import shlex
import threading
from concurrent.futures import Future
from textwrap import dedent

from loguru import logger

from daytona_provider.docker.manager import ByteWriter, DockerManager
from daytona_provider.errors import AgentBootstrapFailed

AGENT_READY_MARKER = "Daytona Agent started"


def get_project_start_script(download_url: str, api_key: str) -> str:
    """Bash script that installs the Daytona binary and runs the agent."""
    auth_header = shlex.quote(f"Authorization: Bearer {api_key}")
    url = shlex.quote(download_url)
    return dedent(
        f"""
        set -e
        if ! command -v daytona >/dev/null 2>&1; then
            if command -v curl >/dev/null 2>&1; then
                curl -sfL -H {auth_header} {url} | sudo -E bash
            elif command -v wget >/dev/null 2>&1; then
                wget -q -O - --header={auth_header} {url} | sudo -E bash
            else
                echo "curl or wget is required to install the Daytona agent" >&2
                exit 1
            fi
        fi
        daytona agent
        """
    ).strip()


class _FirstResult:
    """Single-slot result: the first offer is kept, later offers are ignored."""

    def __init__(self) -> None:
        self._future: Future[BaseException | None] = Future()
        self._lock = threading.Lock()

    def offer(self, outcome: BaseException | None) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._future.set_result(outcome)
            return True

    def wait(self, timeout: float | None) -> BaseException | None:
        return self._future.result(timeout=timeout)


class _TeeWriter:
    """Writes to the log sink and, until the marker is found, to the scanner."""

    def __init__(self, sink: ByteWriter, chunks: "queue.Queue[bytes | None]") -> None:
        self._sink = sink
        self._chunks = chunks
        self.scanning = threading.Event()
        self.scanning.set()

    def write(self, data: bytes) -> int:
        self._sink.write(data)
        if self.scanning.is_set():
            self._chunks.put(data)
        return len(data)


def _scan_for_marker(
    chunks: "queue.Queue[bytes | None]",
    marker: bytes,
    tee: _TeeWriter,
    result: _FirstResult,
) -> None:
    buffer = b""
    while True:
        chunk = chunks.get()
        if chunk is None:
            # A final line without a trailing newline still counts
            if marker in buffer:
                result.offer(None)
            return
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        if any(marker in line for line in lines):
            tee.scanning.clear()
            result.offer(None)
            return


def _watch_completion(
    manager: DockerManager,
    container_name: str,
    command: list[str],
    tee: _TeeWriter,
    chunks: "queue.Queue[bytes | None]",
    result: _FirstResult,
    user: str | None,
) -> None:
    try:
        exit_code, stderr = manager.exec_stream(
            container_name, command, tee, user=user
        )
    except Exception as e:
        # Handed to the waiting caller, which re-raises it as the cause
        result.offer(e)
        return
    finally:
        chunks.put(None)

    if exit_code != 0:
        result.offer(
            AgentBootstrapFailed(
                f"bootstrap command exited with code {exit_code}: {stderr}",
                output=stderr,
            )
        )
    else:
        logger.debug(
            f"Bootstrap command in {container_name} exited cleanly; "
            "waiting for the readiness marker."
        )


def await_agent_ready(
    manager: DockerManager,
    container_name: str,
    command: list[str],
    log_sink: ByteWriter,
    *,
    user: str | None = None,
    marker: str = AGENT_READY_MARKER,
    timeout: float | None = None,
) -> None:
    """
    Run the bootstrap command and block until the agent is ready.

    Parameters
    ----------
    manager
        Manager bound to the endpoint hosting the container.
    container_name
        The project container.
    command
        Bootstrap command, e.g. `["bash", "-c", script]`.
    log_sink
        Receives the combined stdout/stderr of the command.
    user
        User to run the command as inside the container.
    marker
        Text whose appearance on an output line signals readiness.
    timeout
        Seconds to wait for a signal. None waits indefinitely.

    Raises
    ------
    AgentBootstrapFailed
        If the command fails to run, exits non-zero before the marker
        appears, or no signal arrives within `timeout`.
    """
    result = _FirstResult()
    chunks: queue.Queue[bytes | None] = queue.Queue()
    tee = _TeeWriter(log_sink, chunks)

    threading.Thread(
        target=_scan_for_marker,
        args=(chunks, marker.encode("utf-8"), tee, result),
        name=f"agent-scan-{container_name}",
        daemon=True,
    ).start()
    threading.Thread(
        target=_watch_completion,
        args=(manager, container_name, command, tee, chunks, result, user),
        name=f"agent-exec-{container_name}",
        daemon=True,
    ).start()

    try:
        outcome = result.wait(timeout)
    except TimeoutError as e:
        raise AgentBootstrapFailed(
            f"agent in {container_name} did not report readiness "
            f"within {timeout}s"
        ) from e

    if outcome is None:
        logger.info(f"Agent in {container_name} is ready.")
        return
    if isinstance(outcome, AgentBootstrapFailed):
        raise outcome
    raise AgentBootstrapFailed(
        f"bootstrap command could not run in {container_name}: "
        f"{outcome.__class__.__name__}: {outcome}"
    ) from outcome
