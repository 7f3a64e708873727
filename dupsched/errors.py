"""Exception types raised by dupsched."""


class DupschedError(Exception):
    """Base class for all dupsched errors."""


class ConfigurationError(DupschedError, ValueError):
    """A policy section is missing a required parameter or has an invalid value."""

    def __init__(self, section: str, message: str):
        super().__init__(f"Section '{section}': {message}")
        self.section = section


class ExcludeFileError(DupschedError):
    """A section exclude file is missing, unreadable or malformed."""


class LockContentionError(DupschedError):
    """The lock for a target is held by another live process."""

    def __init__(self, key: str, pid: int):
        super().__init__(f"Lock '{key}' is held by running process {pid}")
        self.key = key
        self.pid = pid


class ToolInvocationError(DupschedError):
    """The external backup tool could not be started."""
