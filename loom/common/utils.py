"""Miscellaneous general utilities."""

__all__ = ["create_directory",
           "fsync_directory", "atomic_write_text", "atomic_write_json",
           "acquire_exclusive_lock", "release_lock"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import fcntl
import json
import os
import pathlib
from typing import Any, IO, Union

# --------------------------------------------------------------------------------
# File utilities

def create_directory(path: Union[str, pathlib.Path]) -> None:
    p = pathlib.Path(path).expanduser().resolve()
    pathlib.Path.mkdir(p, parents=True, exist_ok=True)

def fsync_directory(path: Union[str, pathlib.Path]) -> None:
    """Flush the directory entry table of `path` to disk.

    Needed after a rename or unlink, so that the change of the directory entry itself
    survives a power loss (not only the file contents). Linux only.
    """
    fd = os.open(str(path), os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)

def atomic_write_text(path: Union[str, pathlib.Path], content: str) -> None:
    """Write `content` to `path` so that the file is either fully written or not changed at all.

    The write goes to `<path>.tmp` first, which is flushed and fsync'd, and then atomically
    renamed over `path`. Finally the containing directory is fsync'd, so the rename is durable
    when this function returns.

    Raises `OSError` on failure. In that case the original file (if any) is untouched;
    a stale temp file may be left behind.
    """
    path = pathlib.Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)  # atomic on POSIX
    fsync_directory(path.parent)

def atomic_write_json(path: Union[str, pathlib.Path], data: Any) -> None:
    """Like `atomic_write_text`, but serialize `data` as JSON first."""
    atomic_write_text(path, json.dumps(data, indent=2))

# --------------------------------------------------------------------------------
# Locking

def acquire_exclusive_lock(lock_file: Union[str, pathlib.Path]) -> IO:
    """Open `lock_file` and take an exclusive, non-blocking `flock` on it.

    Returns the open file object; keep a reference to it for as long as you hold the lock,
    and pass it to `release_lock` when done.

    Raises `BlockingIOError` if another open file description (in this or any other process)
    already holds the lock. The lock dies with the process, so a crashed owner never leaves
    a stale lock behind.
    """
    handle = open(lock_file, "a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        raise
    logger.debug(f"acquire_exclusive_lock: Acquired lock on '{str(lock_file)}'.")
    return handle

def release_lock(handle: IO) -> None:
    """Release a lock taken by `acquire_exclusive_lock`, and close its file."""
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()
    logger.debug(f"release_lock: Released lock on '{handle.name}'.")
