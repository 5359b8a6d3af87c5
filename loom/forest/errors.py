"""Exception types raised by the chat forest.

`NotFoundError` is a `KeyError`, and `ValidationError` and `InvalidRangeError` are `ValueError`s,
so code that catches the builtin exceptions keeps working.
"""

__all__ = ["ForestError",
           "NotFoundError", "InvalidRangeError", "ValidationError",
           "StorageError", "CorruptStoreError",
           "BusyError"]

class ForestError(Exception):
    """Base class for chat forest errors."""

class NotFoundError(ForestError, KeyError):
    """A referenced node ID or root ID does not exist."""
    def __str__(self) -> str:  # `KeyError` would show the message with quotes around it
        return str(self.args[0]) if self.args else ""

class InvalidRangeError(ForestError, ValueError):
    """A path was requested between two nodes, where the first is not an ancestor of the second."""

class ValidationError(ForestError, ValueError):
    """Malformed input to a mutating operation."""

class StorageError(ForestError, OSError):
    """A persistence operation failed (disk full, permission denied, ...)."""

class CorruptStoreError(StorageError):
    """A stored record is unreadable, or the stored records violate the tree invariants."""

class BusyError(ForestError):
    """The data directory is already held by another store instance."""
