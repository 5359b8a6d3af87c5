"""Chat session helpers for front ends: the current-node pointer, and navigation.

The forest itself has no notion of a "current node". A front end keeps track of which node the user is looking at
(like the HEAD pointer in git), and passes it to the forest explicitly. This module provides the usual pieces:

  - Persisting the pointer across sessions, as a small text file "current-node-id" in the data directory.
    The store tolerates this file, but never reads it.
  - `visit`, to be called when the user navigates to a node. This clears the node's unread tag.
  - `step`, to move the pointer up, down or sideways in the tree.
"""

__all__ = ["load_current_node_id", "save_current_node_id",
           "visit", "step", "directions"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import pathlib
from typing import Dict, Optional, Union

from ..common import utils as common_utils

from . import config
from .chattree import Forest
from .errors import NotFoundError, StorageError, ValidationError
from .tagsort import UNREAD_TAG, has_tag, partition_by_tag, without_tag

directions = ("up", "down", "left", "right")

def _pointer_file(data_dir: Union[str, pathlib.Path]) -> pathlib.Path:
    return pathlib.Path(data_dir).expanduser().resolve() / config.current_node_filename

def load_current_node_id(data_dir: Union[str, pathlib.Path]) -> Optional[str]:
    """Return the node ID saved by `save_current_node_id` in `data_dir`, or `None` if there is none.

    The ID is returned as-is; the caller should check that the node still exists, e.g. with `Forest.get_node`.
    """
    pointer_file = _pointer_file(data_dir)
    try:
        with open(pointer_file, "r", encoding="utf-8") as f:
            node_id = f.read().strip()
    except FileNotFoundError:
        logger.info(f"load_current_node_id: No saved position at '{str(pointer_file)}'.")
        return None
    except OSError as exc:
        raise StorageError(f"load_current_node_id: cannot read '{str(pointer_file)}': {type(exc)}: {exc}") from exc
    return node_id or None

def save_current_node_id(data_dir: Union[str, pathlib.Path], node_id: str) -> None:
    """Save `node_id` as the current position in `data_dir`, for resuming the session later."""
    pointer_file = _pointer_file(data_dir)
    try:
        common_utils.atomic_write_text(pointer_file, node_id)
    except OSError as exc:
        raise StorageError(f"save_current_node_id: cannot write '{str(pointer_file)}': {type(exc)}: {exc}") from exc

def visit(forest: Forest, node_id: str) -> Dict:
    """Mark node `node_id` as seen by the user, and return its (updated) record.

    Clears the unread tag, unless the node is a root-level node (those are never tagged unread,
    since they are where a chat starts).

    Raises `NotFoundError` if there is no such node.
    """
    node = forest.get_node(node_id)
    if node is None:
        raise NotFoundError(f"visit: no such node '{node_id}'")
    if node["parent_id"] is not None and has_tag(node, UNREAD_TAG):
        node = forest.update_node_metadata(node_id, without_tag(node["metadata"], UNREAD_TAG))
    return node

def step(forest: Forest, node_id: str, direction: str) -> str:
    """Move from node `node_id` one step in `direction`, and return the ID of the node arrived at.

    `direction`: One of:
        "up": to the parent.
        "down": to the first child, listing unread children first (see `tagsort.partition_by_tag`).
        "left", "right": to the previous/next sibling.

    At the edge of the tree (no parent, no children, no more siblings in that direction), returns `node_id` itself.

    This only computes the new position; to also mark it as seen, call `visit` on the result.
    """
    if direction not in directions:
        raise ValidationError(f"step: unknown direction '{direction}'; valid: one of {directions}.")
    node = forest.get_node(node_id)
    if node is None:
        raise NotFoundError(f"step: no such node '{node_id}'")

    if direction == "up":
        return node["parent_id"] if node["parent_id"] is not None else node_id
    if direction == "down":
        children = partition_by_tag(forest.get_children(node_id), UNREAD_TAG)
        return children[0]["id"] if children else node_id

    siblings, node_index = forest.get_siblings(node_id)
    if direction == "left":
        node_index = max(0, node_index - 1)
    else:  # "right"
        node_index = min(len(siblings) - 1, node_index + 1)
    return siblings[node_index]["id"]
