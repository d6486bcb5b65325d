"""Test fakes shared across test modules."""

import itertools
import threading
from collections.abc import Iterator
from typing import Any

from docker.errors import ImageNotFound, NotFound


class BufferSink:
    """In-memory log sink."""

    def __init__(self) -> None:
        self.data = b""
        self.closed = False
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self.data += data
        return len(data)

    def close(self) -> None:
        self.closed = True

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


# ----------------------- Docker client fakes --------------------------------


class FakeImages:
    def __init__(self, existing: set[str] | None = None) -> None:
        self._existing = set(existing or [])
        self.pulled: list[tuple[str, dict[str, str] | None]] = []

    def get(self, tag: str) -> str:
        if tag not in self._existing:
            raise ImageNotFound(f"missing: {tag}")
        return tag

    def pull(self, image: str, auth_config: dict[str, str] | None = None) -> str:
        self.pulled.append((image, auth_config))
        self._existing.add(image)
        return image


class FakeContainer:
    _ids = itertools.count(1)

    def __init__(
        self,
        name: str,
        *,
        image: str = "daytonaio/workspace-project:latest",
        labels: dict[str, str] | None = None,
        status: str = "created",
        log_chunks: list[bytes] | None = None,
    ) -> None:
        self.name = name
        self.id = f"{next(self._ids):064x}"
        self.short_id = self.id[:12]
        self.image = image
        self.labels = dict(labels or {})
        self.status = status
        self.log_chunks = list(log_chunks or [])
        self.start_calls = 0
        self.stop_calls = 0
        self.removed_with: dict[str, Any] | None = None
        self.owner: "FakeContainers | None" = None

    @property
    def attrs(self) -> dict[str, Any]:
        return {
            "Created": "2024-05-01T10:00:00Z",
            "State": {"Running": self.status == "running", "Status": self.status},
            "Config": {"Image": self.image, "Labels": self.labels},
        }

    def reload(self) -> None:
        pass

    def start(self) -> None:
        self.start_calls += 1
        self.status = "running"

    def stop(self) -> None:
        self.stop_calls += 1
        self.status = "exited"

    def logs(self, **kwargs: Any) -> Iterator[bytes]:
        return iter(self.log_chunks)

    def remove(self, **kwargs: Any) -> None:
        assert self.owner is not None
        self.owner.remove(self.name, **kwargs)


class FakeContainers:
    def __init__(self, *containers: FakeContainer) -> None:
        self._by_name: dict[str, FakeContainer] = {}
        for container in containers:
            self.add(container)
        self.created: list[dict[str, Any]] = []
        self.create_error: Exception | None = None
        self.remove_error: Exception | None = None

    def get(self, name: str) -> FakeContainer:
        if name not in self._by_name:
            raise NotFound(f"No such container: {name}")
        return self._by_name[name]

    def create(self, image: str, **kwargs: Any) -> FakeContainer:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"image": image, **kwargs})
        container = FakeContainer(
            kwargs["name"], image=image, labels=kwargs.get("labels")
        )
        self.add(container)
        return container

    def add(self, container: FakeContainer) -> None:
        container.owner = self
        self._by_name[container.name] = container

    def list(self, all: bool = False, filters: dict[str, str] | None = None):
        selected = list(self._by_name.values())
        if filters and "label" in filters:
            key, _, value = filters["label"].partition("=")
            selected = [c for c in selected if c.labels.get(key) == value]
        return selected

    def remove(self, name: str, **kwargs: Any) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        container = self._by_name.pop(name)
        container.removed_with = kwargs

    def __contains__(self, name: str) -> bool:
        return name in self._by_name


class ScriptedExec:
    """
    Output and exit code of an exec.

    `chunks` are (stdout, stderr) pairs as yielded by a demuxed stream.
    When `hold` is set, the stream blocks after its chunks until released.
    """

    def __init__(
        self,
        chunks: list[tuple[bytes | None, bytes | None]] | None = None,
        exit_code: int | None = 0,
        *,
        hold: threading.Event | None = None,
        error: Exception | None = None,
    ) -> None:
        self.chunks = list(chunks or [])
        self.exit_code = exit_code
        self.hold = hold
        self.error = error

    def stream(self) -> Iterator[tuple[bytes | None, bytes | None]]:
        yield from self.chunks
        if self.hold is not None:
            self.hold.wait()


class FakeAPI:
    def __init__(self, script: ScriptedExec | None = None) -> None:
        self.script = script or ScriptedExec()
        self.exec_calls: list[dict[str, Any]] = []
        self._ids = itertools.count(1)

    def exec_create(self, container: str, cmd: list[str], **kwargs: Any):
        if self.script.error is not None:
            raise self.script.error
        self.exec_calls.append({"container": container, "cmd": cmd, **kwargs})
        return {"Id": f"exec-{next(self._ids)}"}

    def exec_start(self, exec_id: str, stream: bool = False, demux: bool = False):
        return self.script.stream()

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return {"ExitCode": self.script.exit_code}


class FakeDockerClient:
    def __init__(
        self,
        images: FakeImages | None = None,
        containers: FakeContainers | None = None,
        api: FakeAPI | None = None,
    ) -> None:
        self.images = images or FakeImages()
        self.containers = containers or FakeContainers()
        self.api = api or FakeAPI()
        self.closed = False

    def close(self) -> None:
        self.closed = True

