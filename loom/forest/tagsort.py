"""Tag utilities for chat nodes, e.g. for listing the unread branches first.

All functions here are pure; they never touch the store. To change a node's tags, compute the new metadata
here, and then save it with `Forest.update_node_metadata`::

    node = forest.get_node(node_id)
    forest.update_node_metadata(node_id, without_tag(node["metadata"], UNREAD_TAG))
"""

__all__ = ["UNREAD_TAG",
           "has_tag", "with_tag", "without_tag",
           "partition_by_tag"]

import copy
from typing import Dict, Iterable, List

from unpythonic import partition

from . import config

UNREAD_TAG = config.unread_tag

def has_tag(node: Dict, tag: str) -> bool:
    """Return whether `node` (a node record) has `tag` in its metadata tags."""
    return tag in node["metadata"].get("tags", [])

def with_tag(metadata: Dict, tag: str) -> Dict:
    """Return a copy of `metadata` with `tag` added (at the end, if not already present)."""
    out = copy.deepcopy(metadata)
    tags = out.setdefault("tags", [])
    if tag not in tags:
        tags.append(tag)
    return out

def without_tag(metadata: Dict, tag: str) -> Dict:
    """Return a copy of `metadata` with `tag` removed (if present)."""
    out = copy.deepcopy(metadata)
    out["tags"] = [x for x in out.get("tags", []) if x != tag]
    return out

def partition_by_tag(children: Iterable[Dict], tag: str) -> List[Dict]:
    """Stable-sort node records so that all those having `tag` come first.

    Within each group (with / without the tag), the original relative order is kept.

    E.g. children `[r1, u1, r2, u2]`, where the `u`s have the tag "unread", come out as `[u1, u2, r1, r2]`.
    """
    untagged, tagged = partition(pred=lambda node: has_tag(node, tag),
                                 iterable=children)
    tagged = list(tagged)
    untagged = list(untagged)
    return tagged + untagged
