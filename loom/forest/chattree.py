"""Forest: branching chat history, persisted in a data directory.

This is the API that chat front ends use. It wraps `NodeStore` with tree-aware operations.
"""

__all__ = ["Forest"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import pathlib
from typing import Dict, Iterable, List, Optional, Tuple, Union

from unpythonic.env import env

from . import config
from . import records
from .errors import NotFoundError
from .nodestore import NodeStore
from .pathresolver import resolve_path

class Forest:
    def __init__(self, data_dir: Optional[Union[str, pathlib.Path]] = None):
        """Branching chat history.

        Each node holds one chat message (user or assistant). Each node has at most one parent, but may have
        many children, making a forest structure. Each child of a node is an alternative continuation of the chat
        up to that node. Starting from any node, the linear chat history up to that point is obtained by walking up
        the parent chain; see `get_path`.

        Each conversation is anchored by a root record, which holds its configuration (model, system prompt,
        model parameters). The nodes directly under a root have `parent_id = None`; every node knows its root
        by its "root_id" field.

        Nodes are never deleted, and messages are never edited. Only the metadata (such as tags) of a node
        can change, with `update_node_metadata`.

        `data_dir`: Where to store the data. Default is `loom.forest.config.forest_data_dir`.
                    The directory is locked for the lifetime of this instance (until `close`);
                    a second `Forest` on the same directory raises `BusyError`.

        NOTE: It is the caller's responsibility to keep track of the current position in the chat
              (e.g. the HEAD node that the user is looking at); this class only provides the forest itself.
              See `loom.forest.session` for helpers.

        All records returned by this class are copies; editing them has no effect on the stored data.
        """
        if data_dir is None:
            data_dir = config.forest_data_dir
        self.datastore = NodeStore(data_dir)

    def close(self) -> None:
        """Release the data directory. Also called automatically at app exit."""
        self.datastore.close()

    def __enter__(self) -> "Forest":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    # --------------------------------------------------------------------------------
    # Roots

    def create_root(self, root_config: Dict) -> Dict:
        """Start a new conversation. See `records.create_root_config` for making `root_config`.

        Returns the new root record.
        """
        root = self.datastore.create_root(root_config)
        logger.info(f"Forest.create_root: Started new conversation '{root['id']}' with model '{root['config']['model']}'.")
        return root

    def get_root(self, root_id: str) -> Optional[Dict]:
        """Return the root record `root_id`, or `None` if there is no such root."""
        return self.datastore.get_root(root_id)

    def get_all_roots(self) -> List[Dict]:
        return self.datastore.get_all_roots()

    def get_root_nodes(self, root_id: str) -> List[Dict]:
        return self.datastore.get_root_nodes(root_id)

    # --------------------------------------------------------------------------------
    # Nodes

    def create_message_node(self,
                            parent_id: Optional[str],
                            message: Dict,
                            root_id: Optional[str] = None,
                            tags: Optional[Iterable[str]] = None) -> Dict:
        """Add `message` to the chat, as a new child of node `parent_id`.

        This is how the tree grows: a new user message, or a new AI reply. Adding another child to a node
        that already has children creates a new branch.

        `parent_id`: ID of the parent node, or `None` to start the chat of a root (then `root_id` is required).
        `message`: See `records.create_chat_message`.
        `root_id`: Only needed for a root-level node. For other nodes, it is taken from the parent.
        `tags`: Initial tags of the new node.

                The forest has no built-in policy for tagging. E.g. if your app generates several alternative
                AI replies at once, and you want the ones the user has not seen yet marked as unread, pass
                `tags=[tagsort.UNREAD_TAG]` when creating those.

        Returns the new node record.
        """
        return self.datastore.create_node(parent_id,
                                          message,
                                          root_id=root_id,
                                          metadata=records.create_metadata(tags=tags))

    def get_node(self, node_id: str) -> Optional[Dict]:
        """Return node record `node_id`, or `None` if there is no such node."""
        return self.datastore.get_node(node_id)

    def get_children(self, node_id: str) -> List[Dict]:
        """Return the children of node `node_id`, in creation order. May be empty, if `node_id` is a leaf.

        Raises `NotFoundError` if there is no such node.
        """
        if self.datastore.get_node(node_id) is None:
            raise NotFoundError(f"Forest.get_children: no such node '{node_id}'")
        return self.datastore.get_children(node_id)

    def get_siblings(self, node_id: str) -> Tuple[List[Dict], int]:
        """Return the siblings of node `node_id`, including that node itself.

        Returns the tuple `(siblings, node_index)`, where:
            `siblings` is a list of node records,
            `node_index` is the (0-based) index of `node_id` itself in the `siblings` list.

        The siblings of a root-level node are the other root-level nodes of the same root.

        Raises `NotFoundError` if there is no such node.
        """
        node = self.datastore.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Forest.get_siblings: no such node '{node_id}'")
        if node["parent_id"] is None:
            siblings = self.datastore.get_root_nodes(node["root_id"])
        else:
            siblings = self.datastore.get_children(node["parent_id"])
        node_index = [sibling["id"] for sibling in siblings].index(node_id)
        return siblings, node_index

    def update_node_metadata(self, node_id: str, metadata: Dict) -> Dict:
        """Replace the metadata of node `node_id`. See `NodeStore.update_node_metadata`.

        Returns the updated node record.
        """
        return self.datastore.update_node_metadata(node_id, metadata)

    # --------------------------------------------------------------------------------
    # Paths

    def get_path(self, to: str, from_: Optional[str] = None) -> env:
        """Return the chat history leading to node `to`.

        `to`: ID of the last node of the history.
        `from_`: If `None`, the history starts at the root-level node.
                 If given, the history starts just after node `from_` (which is not included),
                 which must be an ancestor of `to`.

        Returns an `unpythonic.env` with the attributes:
            `root`: the root record of the conversation,
            `path`: list of node records, root-most first, ending with node `to`.

        Raises `NotFoundError` if `to` does not exist, and `InvalidRangeError` if `from_` is not an ancestor of `to`.
        """
        with self.datastore.lock:
            path = resolve_path(self.datastore.get_node,
                                to=to,
                                from_=from_,
                                max_steps=len(self.datastore))
            root_id = path[-1]["root_id"] if path else self.datastore.get_node(to)["root_id"]
            root = self.datastore.get_root(root_id)
        return env(root=root, path=path)

    def linearize(self, node_id: str) -> List[Dict]:
        """Return the chat messages from the start of the conversation up to and including node `node_id`.

        This is the message history to send to the model. The difference to `get_path` is that this extracts
        just the "message" field of each node, dropping the node IDs and metadata.

        The system prompt is not included; it is in the root record's config.
        """
        return [node["message"] for node in self.get_path(to=node_id).path]
