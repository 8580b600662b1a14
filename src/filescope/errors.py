"""Error taxonomy for the FileScope engine."""

from typing import Optional


class FileScopeError(Exception):
    """Base class for engine errors. Carries the offending path when known."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class NotFound(FileScopeError):
    """A path, file, or saved tree does not exist."""
    pass


class IOFailure(FileScopeError):
    """Reading or writing one entry failed. Skipped and logged during scans."""
    pass


class ParseFailure(FileScopeError):
    """Dependency extraction failed for one file."""
    pass


class PersistenceFailure(FileScopeError):
    """A save or load could not complete."""
    pass


class ValidationFailure(FileScopeError):
    """A loaded document does not have the expected shape."""
    pass


class ProjectNotSet(FileScopeError):
    """An operation needs a project but none has been initialized."""
    pass
