"""Exception hierarchy for tars."""


class TarsError(Exception):
    """Base class for all tars errors."""


class AgentError(TarsError):
    """An agent invocation failed."""


class SpawnFailure(AgentError):
    """The agent binary could not be started."""


class AgentTimeout(AgentError):
    """The agent process was killed by one of the invocation timers."""


class IdleTimeout(AgentTimeout):
    """No output was received within the idle window."""


class AbsoluteTimeout(AgentTimeout):
    """The invocation exceeded its total time budget."""


class NonZeroExit(AgentError):
    """The agent exited unsuccessfully before signalling completion."""

    def __init__(self, exit_code: int, description: str = "agent") -> None:
        self.exit_code = exit_code
        if exit_code < 0:
            message = f"{description} was terminated by signal {-exit_code}"
        else:
            message = f"{description} exited with code {exit_code}"
        super().__init__(message)


class SupervisorBusy(TarsError):
    """Another agent invocation is already in flight."""

    def __init__(self) -> None:
        super().__init__("supervisor busy")


class TaskStoreError(TarsError):
    """The task collection could not be read or written."""
