"""Exception types raised by arbiter services."""


class ArbiterError(Exception):
    """Base class for all arbiter errors."""


class WorkspaceError(ArbiterError):
    """A git or filesystem operation on a workspace failed."""

    def __init__(self, message: str, command: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class SessionNotFoundError(ArbiterError, KeyError):
    """No session is known under the given id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class CoordinatorRejectedError(ArbiterError):
    """The coordinator is not accepting new sessions."""

    def __init__(self, message: str, state: str = "") -> None:
        super().__init__(message)
        self.state = state


class QueueFullError(ArbiterError):
    """The message queue is at capacity and nothing could be evicted."""
