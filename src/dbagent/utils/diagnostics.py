from typing import Optional


class AgentError(Exception):
    """
    Base exception for failures surfaced to the RPC caller, carrying the
    operation that was being processed when it happened.
    """
    def __init__(self, message: str, operation: Optional[str] = None):
        self.message = message
        self.operation = operation
        ctx = f" during '{operation}'" if operation else ""
        super().__init__(f"{message}{ctx}")


class ConfigurationError(AgentError):
    """Missing executable, bad working directory or unwritable data/log files."""


class SpawnError(AgentError):
    """The operating system failed to create a child process."""


class SignalError(AgentError):
    """A tracked process could not be signaled (vanished or not permitted)."""


class StateError(AgentError):
    """A command arrived that the controller cannot accept in its current state."""


class UploadError(AgentError):
    """An artifact or directory upload failed."""
