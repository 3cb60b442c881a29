"""
Error taxonomy for lockbox operations.
"""


class LockboxError(Exception):
    """Lockbox operation error."""
    pass


class NotFound(LockboxError):
    """Container backing file does not exist."""
    pass


class AlreadyExists(LockboxError):
    """Container backing file already exists."""
    pass


class WrongPassword(LockboxError):
    """Password did not unlock the volume."""
    pass


class InvalidPassword(LockboxError):
    """Password check failed before a destructive operation."""
    pass


class AlreadyMounted(LockboxError):
    """Volume is already mounted at its mount point."""
    pass


class AlreadyOpen(LockboxError):
    """A mapping with the same name is still active."""
    pass


class NotMounted(LockboxError):
    """Operation requires a mounted volume."""
    pass


class NoConfig(LockboxError):
    """Container has no readable configuration."""
    pass


class ToolFailure(LockboxError):
    """An external tool failed.

    Keeps the failing command and whatever it wrote to stderr so callers can
    surface the underlying message.
    """

    def __init__(self, message: str, cmd: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.cmd = cmd
        self.stderr = stderr


class MountToolFailure(ToolFailure):
    """mount/umount failed."""
    pass


class PartialFailure(LockboxError):
    """Cleanup completed only partially."""

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.details = details or []


class LockTimeout(LockboxError):
    """Lock acquisition timeout."""
    pass
