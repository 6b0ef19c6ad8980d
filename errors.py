"""Exceptions raised by the file host core.

Lookups that find nothing return ``None`` instead of raising.
"""


class FileHostError(Exception):
    """Base class for every error the file host raises."""


class StorageIOError(FileHostError):
    """The metadata snapshot or the storage tree could not be read or written."""


class InvalidTTL(FileHostError):
    def __init__(self, ttl, max_ttl: int):
        self.ttl = ttl
        self.max_ttl = max_ttl
        super().__init__(f"TTL must be between 1 and {max_ttl} hours (got {ttl!r})")


class PartialCleanupFailure(StorageIOError):
    """A stored file could not be removed; its metadata was kept."""

    def __init__(self, relative_path: str, cause: OSError):
        self.relative_path = relative_path
        self.cause = cause
        super().__init__(f"could not delete {relative_path}: {cause}")
