"""
Log sinks for project provisioning output.

A sink is an append-only byte stream. Bootstrap output and container logs
are written to several sinks at once through `FanOutSink`.
"""

import threading
from pathlib import Path
from typing import Protocol

from loguru import logger


class LogSink(Protocol):
    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


class InfoLogSink:
    """Forwards complete lines to the provider logger at INFO level."""

    def __init__(self, **context: str) -> None:
        self._logger = logger.bind(**context)
        self._buffer = b""
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._buffer += data
            *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            text = line.decode("utf-8", errors="replace").rstrip("\r")
            if text:
                self._logger.info(text)
        return len(data)

    def close(self) -> None:
        with self._lock:
            rest, self._buffer = self._buffer, b""
        text = rest.decode("utf-8", errors="replace").strip()
        if text:
            self._logger.info(text)


class ProjectFileLogSink:
    """Appends raw output to `<logs_dir>/<workspace>/<project>/provider.log`."""

    def __init__(self, logs_dir: Path, workspace_id: str, project_name: str) -> None:
        self.path = logs_dir / workspace_id / project_name / "provider.log"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("ab")
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            if self._file.closed:
                return 0
            written = self._file.write(data)
            self._file.flush()
            return written

    def close(self) -> None:
        with self._lock:
            self._file.close()


class FanOutSink:
    """
    Duplicates every write to each of its sinks.

    `close()` closes the owned sinks only; `borrowed` sinks belong to the
    caller and are left open.
    """

    def __init__(self, *sinks: LogSink, borrowed: tuple[LogSink, ...] = ()) -> None:
        self._owned = list(sinks)
        self._sinks = [*sinks, *borrowed]
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            for sink in self._sinks:
                sink.write(data)
        return len(data)

    def close(self) -> None:
        for sink in self._owned:
            sink.close()
