"""
Error taxonomy for the provider.

Every error raised across the provider boundary derives from `ProviderError`
and carries enough context (operation, workspace, project) to be actionable
by the caller. Layers wrap lower-level exceptions with `raise ... from e`
rather than swallowing them.
"""


class ProviderError(Exception):
    """Base class for all provider errors."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        workspace_id: str | None = None,
        project_name: str | None = None,
    ) -> None:
        self.message = message
        self.operation = operation
        self.workspace_id = workspace_id
        self.project_name = project_name
        super().__init__(self._format())

    def add_context(
        self,
        *,
        operation: str | None = None,
        workspace_id: str | None = None,
        project_name: str | None = None,
    ) -> None:
        """Fill in context the raising layer did not know about."""
        self.operation = self.operation or operation
        self.workspace_id = self.workspace_id or workspace_id
        self.project_name = self.project_name or project_name
        self.args = (self._format(),)

    def _format(self) -> str:
        context: list[str] = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.workspace_id:
            context.append(f"workspace={self.workspace_id}")
        if self.project_name:
            context.append(f"project={self.project_name}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class MalformedOptions(ProviderError):
    """The target options could not be parsed. Never retried."""


class EndpointUnreachable(ProviderError):
    """Neither a local socket nor a complete remote target was given."""


class AuthenticationFailed(ProviderError):
    """The remote host rejected the supplied credentials."""


class ConnectionFailed(ProviderError):
    """The remote host or the forwarded endpoint could not be reached."""


class ContainerCreateFailed(ProviderError):
    pass


class ContainerStartFailed(ProviderError):
    pass


class ContainerStopFailed(ProviderError):
    pass


class ContainerDestroyFailed(ProviderError):
    pass


class AgentBootstrapFailed(ProviderError):
    """The in-container agent did not become ready.

    `output` holds the captured error output of the bootstrap command
    verbatim (empty when the failure did not come from the command itself).
    """

    def __init__(self, message: str, *, output: str = "", **context: str | None):
        self.output = output
        super().__init__(message, **context)


class NotFound(ProviderError):
    """The container record does not exist (treat as "already gone")."""


class InvalidStateTransition(ProviderError):
    """The requested operation is not allowed in the project's current state."""
