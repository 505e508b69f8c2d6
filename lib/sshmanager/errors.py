"""Error types raised by ssh-manager components."""


class SSHManagerError(Exception):
    """Base class for all ssh-manager errors."""


class ValidationError(SSHManagerError, ValueError):
    """Bad key type, size, name or other user input."""


class AlreadyExistsError(SSHManagerError):
    """A key with the requested name already exists."""


class NotFoundError(SSHManagerError):
    """A referenced key or file does not exist."""


class ExternalToolFailure(SSHManagerError, RuntimeError):
    """An external program exited non-zero, timed out or is missing."""


class KeyPermissionError(SSHManagerError, PermissionError):
    """chmod or directory creation failed."""
