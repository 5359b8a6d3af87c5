"""Ancestor walk: linearize the branch between two nodes of a chat forest."""

__all__ = ["resolve_path"]

import collections
from typing import Callable, Dict, List, Optional

from .errors import CorruptStoreError, InvalidRangeError, NotFoundError

def resolve_path(get_node: Callable[[str], Optional[Dict]],
                 to: str,
                 from_: Optional[str] = None,
                 max_steps: Optional[int] = None) -> List[Dict]:
    """Starting from node `to`, walk up the parent chain, and return the nodes on the way, root-most first.

    `get_node`: Function `node_id -> node record`, returning `None` for a nonexistent node.
                Typically `NodeStore.get_node`.
    `to`: ID of the node where the walk starts. It is the last node of the result.
    `from_`: Where to stop.

             If `None`, the walk goes up to and including a root-level node (`parent_id is None`).

             Otherwise, the walk stops when it arrives at node `from_`, which is NOT included in the result.
             So `resolve_path(get_node, to=x, from_=x)` returns an empty list, and for a parent `p` of `x`,
             `resolve_path(get_node, to=x, from_=p)` returns just `[x]`.

             This is useful for getting only the new messages since a node you already have the history for.
    `max_steps`: Upper bound for the number of nodes in the result; typically the number of nodes in the store.
                 The parent chain is acyclic by construction, but if it ever was not, exceeding this limit
                 raises `CorruptStoreError` instead of looping forever. `None` means no limit.

    Raises `NotFoundError` if `to` does not exist.

    Raises `InvalidRangeError` if `from_` is given, but it is not an ancestor of `to` (nor `to` itself).
    Running into a missing node halfway up the chain counts as such, too.

    The cost is O(depth of `to`).
    """
    node = get_node(to)
    if node is None:
        raise NotFoundError(f"resolve_path: no such node '{to}'")

    linearized_history = collections.deque()
    while True:
        if from_ is not None and node["id"] == from_:
            break
        if max_steps is not None and len(linearized_history) >= max_steps:
            raise CorruptStoreError(f"resolve_path: parent chain of node '{to}' is longer than {max_steps} steps; it must contain a cycle.")
        linearized_history.appendleft(node)
        parent_id = node["parent_id"]
        if parent_id is None:
            if from_ is not None:
                raise InvalidRangeError(f"resolve_path: node '{from_}' is not an ancestor of node '{to}'")
            break
        parent = get_node(parent_id)
        if parent is None:
            raise InvalidRangeError(f"resolve_path: while walking up from node '{to}': node '{node['id']}' links to nonexistent parent '{parent_id}'")
        node = parent
    return list(linearized_history)
