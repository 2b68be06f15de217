# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Error taxonomy shared by the hub, the agent and the executor."""


class RelayError(Exception):
    """Base class for every error raised by tbot-relay."""


class NotFound(RelayError):
    """Unknown command, or a command name that is not allow-listed."""


class PermissionDenied(RelayError):
    """The script exists but is not executable by this process."""


class Timeout(RelayError):
    """The script exceeded its wall-clock budget and was killed."""

    def __init__(self, message: str, output: bytes = b""):
        super().__init__(message)
        self.output = output


class ExecutionFailed(RelayError):
    """The script exited with a non-zero status."""

    def __init__(self, message: str, output: bytes = b"", returncode: int | None = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class NetworkError(RelayError):
    """A registration, dispatch, proxy or delivery call failed."""


class PersistenceError(RelayError):
    """Loading or saving the data directory failed."""


class Locked(RelayError):
    """The data directory is already held by another process."""
