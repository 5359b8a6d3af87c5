"""Branching conversation store: a forest of chat messages, persisted in a data directory."""

__all__ = ["Forest", "NodeStore",
           "ForestError", "NotFoundError", "InvalidRangeError", "ValidationError",
           "StorageError", "CorruptStoreError", "BusyError"]

from .chattree import Forest
from .errors import (ForestError, NotFoundError, InvalidRangeError, ValidationError,
                     StorageError, CorruptStoreError, BusyError)
from .nodestore import NodeStore
