"""Custom exceptions for devbox."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class PreconditionError(ManagerError):
    """A required tool, identity or credential is missing."""


class PortExhaustedError(ManagerError):
    """No free SSH forwarding port left in the scanned range."""


class ToolError(ManagerError):
    """An external command failed or could not be executed."""
