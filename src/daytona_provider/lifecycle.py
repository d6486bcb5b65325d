"""Per-project lifecycle state tracking."""

import threading
from enum import Enum

from loguru import logger

from daytona_provider.errors import InvalidStateTransition


class ProjectState(str, Enum):
    NOT_CREATED = "not_created"
    CREATED = "created"
    STARTING = "starting"
    BOOTSTRAPPING = "bootstrapping"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYED = "destroyed"
    FAILED = "failed"


IN_FLIGHT_STATES = frozenset(
    {ProjectState.STARTING, ProjectState.BOOTSTRAPPING, ProjectState.STOPPING}
)

# The tracker only lives for the process, so states observed after a restart
# start at NOT_CREATED even if a container already exists. Stop and destroy
# are therefore accepted from it.
_TRANSITIONS: dict[ProjectState, frozenset[ProjectState]] = {
    ProjectState.NOT_CREATED: frozenset(
        {ProjectState.CREATED, ProjectState.STOPPING, ProjectState.DESTROYED}
    ),
    ProjectState.CREATED: frozenset(
        {
            ProjectState.CREATED,
            ProjectState.STARTING,
            ProjectState.STOPPING,
            ProjectState.DESTROYED,
        }
    ),
    ProjectState.STARTING: frozenset(
        {ProjectState.BOOTSTRAPPING, ProjectState.FAILED}
    ),
    ProjectState.BOOTSTRAPPING: frozenset(
        {ProjectState.RUNNING, ProjectState.FAILED}
    ),
    ProjectState.RUNNING: frozenset(
        {ProjectState.CREATED, ProjectState.STOPPING, ProjectState.DESTROYED}
    ),
    ProjectState.STOPPING: frozenset({ProjectState.STOPPED}),
    ProjectState.STOPPED: frozenset(
        {ProjectState.CREATED, ProjectState.STOPPING, ProjectState.DESTROYED}
    ),
    ProjectState.DESTROYED: frozenset(
        {ProjectState.CREATED, ProjectState.DESTROYED}
    ),
    ProjectState.FAILED: frozenset({ProjectState.CREATED, ProjectState.DESTROYED}),
}


def can_transition(current: ProjectState, target: ProjectState) -> bool:
    return target in _TRANSITIONS[current]


ProjectKey = tuple[str, str]


class ProjectStateTracker:
    """
    Thread-safe record of each project's lifecycle state.

    Keys are `(workspace_id, project_name)`. The lock only guards the mapping;
    it is never held while a container operation runs.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[ProjectKey, ProjectState] = {}

    def get(self, workspace_id: str, project_name: str) -> ProjectState:
        with self._lock:
            return self._states.get(
                (workspace_id, project_name), ProjectState.NOT_CREATED
            )

    def transition(
        self, workspace_id: str, project_name: str, target: ProjectState
    ) -> ProjectState:
        """
        Move a project to `target` and return the state it left.

        Raises
        ------
        InvalidStateTransition
            If `target` cannot be reached from the current state.
        """
        key = (workspace_id, project_name)
        with self._lock:
            current = self._states.get(key, ProjectState.NOT_CREATED)
            if not can_transition(current, target):
                raise InvalidStateTransition(
                    f"cannot move from {current.value} to {target.value}",
                    workspace_id=workspace_id,
                    project_name=project_name,
                )
            self._states[key] = target
        logger.trace(
            f"Project {workspace_id}/{project_name}: "
            f"{current.value} -> {target.value}"
        )
        return current

    def ensure_can_transition(
        self, workspace_id: str, project_name: str, target: ProjectState
    ) -> None:
        """Raise `InvalidStateTransition` unless `target` is reachable now."""
        current = self.get(workspace_id, project_name)
        if not can_transition(current, target):
            raise InvalidStateTransition(
                f"cannot move from {current.value} to {target.value}",
                workspace_id=workspace_id,
                project_name=project_name,
            )

    def restore(
        self, workspace_id: str, project_name: str, state: ProjectState
    ) -> None:
        """Put back a state left by an operation that did not take effect."""
        with self._lock:
            self._states[(workspace_id, project_name)] = state
