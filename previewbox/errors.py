"""
Exceptions surfaced by the sandbox orchestration layer.

Only these reach callers; retries and recreation mechanics stay internal.
"""


class SandboxError(Exception):
    """Base class for sandbox orchestration failures."""
    pass


class SandboxNotAvailableError(SandboxError):
    """Raised when a file or exec operation runs with no sandbox bound."""

    def __init__(self, message: str = "No sandbox available"):
        super().__init__(message)


class SandboxCreationError(SandboxError):
    """Raised when a sandbox could not be created, even after retrying."""
    pass


class PreviewAddressError(SandboxError):
    """Raised when the sandbox's preview port mapping never became visible."""

    def __init__(self, message: str = "Failed to allocate preview address"):
        super().__init__(message)


class CommandTransportError(SandboxError):
    """Raised when the runtime control API fails while running a command."""
    pass


class CapacityError(SandboxError):
    """Raised when the server cannot host another sandbox."""
    pass
