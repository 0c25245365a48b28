"""Exceptions raised by the filedeps engine and storage layers."""


class FileDepsError(Exception):
    """Base exception for filedeps errors."""
    pass


class StorageUnavailable(FileDepsError):
    """Raised when the occurrence or edge store cannot be reached.

    Not retried internally; retry policy belongs to the caller.
    """
    pass


class InvalidParameter(FileDepsError):
    """Raised when a request parameter is rejected before any store access."""
    pass


class PartialRebuildPrevented(FileDepsError):
    """Raised when an edge rebuild aborted and was rolled back.

    The previous edge set for the key is still intact and queryable.
    """
    pass


class ExtractionInProgress(FileDepsError):
    """Raised when a non-waiting extraction finds its key already locked."""
    pass


class ConfigError(FileDepsError):
    """Raised when configuration cannot be loaded."""
    pass
