"""Agent exception hierarchy.

Every failure the agent reports back to the coordinator is one of these.
None of them is fatal to the agent process.
"""


class AgentError(Exception):
    """Base error type for all agent-side failures."""


class ConfigurationError(AgentError):
    """App config is missing a field the operation needs."""


class ResourceConflict(AgentError):
    """App is already managed, or its port is already bound."""


class SpawnError(AgentError):
    """The OS could not create the process."""


class ExitError(AgentError):
    """A one-shot job exited non-zero or was killed by a signal."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class ExternalToolError(AgentError):
    """A container-runtime or OS-automation CLI call failed or timed out."""
