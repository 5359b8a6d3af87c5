"""Durable keyed storage for the nodes and roots of a chat forest.

Each record lives in its own JSON file inside the data directory::

    <data_dir>/roots/<root_id>.json
    <data_dir>/nodes/<node_id>.json

Every write is atomic (write to temp file, fsync, rename, fsync directory), and durable when the call returns.

Creating a child node touches two records, the new node and its parent (whose list of children gets the new ID).
This pair of writes is made atomic by a small transaction journal; see `NodeStore.create_node`.
"""

__all__ = ["NodeStore"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import atexit
import copy
import json
import pathlib
import threading
import time
from typing import Dict, List, Optional, Union
import urllib.parse

from unpythonic import gensym

from ..common import utils as common_utils

from . import config
from . import records
from .errors import BusyError, CorruptStoreError, NotFoundError, StorageError, ValidationError

class NodeStore:
    def __init__(self, data_dir: Union[str, pathlib.Path]):
        """Open (or create) the chat forest stored in `data_dir`.

        Opening takes an exclusive lock on the data directory. If another store instance (in any process)
        already holds it, this raises `BusyError`. The lock is held until `close` (which is also called
        automatically at app exit).

        If the previous owner crashed in the middle of creating a node, the half-done creation is rolled back.

        All records are then loaded into memory, and checked against the tree invariants (see `check_integrity`).
        If any problem is found, this raises `CorruptStoreError`, and the store is not opened.

        The store keeps the whole forest in memory, as a doubly-linked forest keyed by ID::

            self.nodes = {node_id: node_record, ...}
            self.roots = {root_id: root_record, ...}

        Reads are served from memory; every mutation is written through to disk before it returns.
        The in-memory state is updated only after the disk write has succeeded, so the two never diverge.

        For the record formats, see `loom.forest.records`.

        **Thread safety**

        All public methods take `self.lock` (a `threading.RLock`). The store is meant for a single owner
        issuing one call at a time, but the lock keeps the in-memory state consistent if that is not the case.
        """
        self.data_dir = pathlib.Path(data_dir).expanduser().resolve()
        self.roots_dir = self.data_dir / config.roots_dirname
        self.nodes_dir = self.data_dir / config.nodes_dirname
        self.journal_file = self.data_dir / config.journal_filename
        self.nodes: Dict[str, Dict] = {}
        self.roots: Dict[str, Dict] = {}
        self.lock = threading.RLock()
        self._lock_handle = None
        self._pending_journal = None  # set if an in-process rollback failed

        logger.info(f"NodeStore.__init__: Opening chat forest at '{str(data_dir)}' (resolved to '{str(self.data_dir)}').")
        try:
            common_utils.create_directory(self.roots_dir)
            common_utils.create_directory(self.nodes_dir)
        except OSError as exc:
            raise StorageError(f"NodeStore.__init__: cannot create data directory '{str(self.data_dir)}': {type(exc)}: {exc}") from exc

        try:
            self._lock_handle = common_utils.acquire_exclusive_lock(self.data_dir / config.lock_filename)
        except BlockingIOError as exc:
            raise BusyError(f"NodeStore.__init__: data directory '{str(self.data_dir)}' is already in use by another store instance.") from exc
        except OSError as exc:
            raise StorageError(f"NodeStore.__init__: cannot lock data directory '{str(self.data_dir)}': {type(exc)}: {exc}") from exc

        try:
            self._recover()
            self._load()
            problems = self.check_integrity()
            if problems:
                for problem in problems:
                    logger.error(f"NodeStore.__init__: {problem}")
                plural_s = "s" if len(problems) != 1 else ""
                raise CorruptStoreError(f"NodeStore.__init__: chat forest at '{str(self.data_dir)}' failed integrity check ({len(problems)} problem{plural_s}); first: {problems[0]}")
        except BaseException:
            self.close()
            raise

        atexit.register(self.close)

    # --------------------------------------------------------------------------------
    # Lifecycle

    def close(self) -> None:
        """Release the lock on the data directory. Safe to call more than once.

        Every mutation is already on disk, so there is nothing to save here.
        """
        with self.lock:
            if self._lock_handle is None:
                return
            common_utils.release_lock(self._lock_handle)
            self._lock_handle = None
            atexit.unregister(self.close)
            logger.info(f"NodeStore.close: Closed chat forest at '{str(self.data_dir)}'.")

    @property
    def closed(self) -> bool:
        return self._lock_handle is None

    def __enter__(self) -> "NodeStore":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self.nodes)

    def _yell_if_closed(self, funcname: str) -> None:
        if self.closed:
            raise StorageError(f"NodeStore.{funcname}: store at '{str(self.data_dir)}' is closed.")

    def _finish_pending_rollback(self, funcname: str) -> None:
        """Retry a rollback that failed earlier. Until it succeeds, all writes are refused."""
        if self._pending_journal is None:
            return
        logger.warning(f"NodeStore.{funcname}: Retrying the rollback of unfinished node creation '{self._pending_journal['node_id']}'.")
        try:
            self._rollback(self._pending_journal)
        except OSError as exc:
            raise StorageError(f"NodeStore.{funcname}: store at '{str(self.data_dir)}' has an unfinished rollback, and retrying it failed: {type(exc)}: {exc}") from exc
        self._pending_journal = None
        logger.info(f"NodeStore.{funcname}: Rollback complete.")

    # --------------------------------------------------------------------------------
    # Reading

    def get_node(self, node_id: str) -> Optional[Dict]:
        """Return (a copy of) node `node_id`, or `None` if there is no such node."""
        with self.lock:
            node = self.nodes.get(node_id)
            return copy.deepcopy(node) if node is not None else None

    def get_root(self, root_id: str) -> Optional[Dict]:
        """Return (a copy of) root `root_id`, or `None` if there is no such root."""
        with self.lock:
            root = self.roots.get(root_id)
            return copy.deepcopy(root) if root is not None else None

    def get_children(self, node_id: str) -> List[Dict]:
        """Return (copies of) the children of `node_id`, in creation order.

        Returns an empty list if `node_id` is a leaf, or if there is no such node.
        """
        with self.lock:
            node = self.nodes.get(node_id)
            if node is None:
                return []
            return [copy.deepcopy(self.nodes[child_id]) for child_id in node["child_ids"]]

    def get_all_roots(self) -> List[Dict]:
        """Return (copies of) all roots, oldest first."""
        with self.lock:
            return [copy.deepcopy(root) for root in sorted(self.roots.values(), key=lambda root: root["created_at"])]

    def get_root_nodes(self, root_id: str) -> List[Dict]:
        """Return (copies of) the root-level nodes (`parent_id is None`) belonging to root `root_id`, oldest first.

        We don't keep track of these separately; this is done by an O(n) linear scan over the whole forest.
        """
        with self.lock:
            if root_id not in self.roots:
                raise NotFoundError(f"NodeStore.get_root_nodes: no such root '{root_id}'")
            out = [node for node in self.nodes.values() if node["parent_id"] is None and node["root_id"] == root_id]
            out.sort(key=lambda node: node["message"]["timestamp"])  # stable, so ties keep load order
            return copy.deepcopy(out)

    # --------------------------------------------------------------------------------
    # Writing

    def create_root(self, root_config: Dict) -> Dict:
        """Create a new conversation root with configuration `root_config` (see `records.create_root_config`).

        Returns (a copy of) the new root record.
        """
        root_config = records.validate_root_config(root_config)
        with self.lock:
            self._yell_if_closed("create_root")
            self._finish_pending_rollback("create_root")
            root_id = self._new_id("forest-root", self.roots)
            root = {"id": root_id,
                    "config": root_config,
                    "created_at": time.time_ns()}
            try:
                common_utils.atomic_write_json(self._root_path(root_id), root)
            except OSError as exc:
                raise StorageError(f"NodeStore.create_root: could not write root '{root_id}': {type(exc)}: {exc}") from exc
            self.roots[root_id] = root
            logger.debug(f"NodeStore.create_root: Created root '{root_id}' (model '{root_config['model']}').")
            return copy.deepcopy(root)

    def create_node(self,
                    parent_id: Optional[str],
                    message: Dict,
                    root_id: Optional[str] = None,
                    metadata: Optional[Dict] = None) -> Dict:
        """Create a node containing chat `message`, as the last child of `parent_id`.

        `parent_id`: ID of the parent node, or `None` to create a root-level node.
        `message`: The chat message; see `records.create_chat_message`.
        `root_id`: The conversation root the node belongs to.
                   Required for a root-level node. For a child node, it is inherited from the parent;
                   if given anyway, it must match.
        `metadata`: Initial metadata (see `records.create_metadata`). Default is no tags.

        Returns (a copy of) the new node record.

        Linking is done in both directions. For a child node, the new node record and the updated
        parent record are committed as one unit:

          1. Write a journal, which names the new node and holds the parent record as it was before.
          2. Write the new node record.
          3. Write the updated parent record.
          4. Delete the journal.

        If step 2 or 3 fails, the journal is used right away to undo the changes, and `StorageError` is raised.
        If the process dies before step 4, the next `NodeStore` to open the directory undoes them.
        Either way, nobody ever sees a node whose parent does not list it, or a parent listing a missing child.
        """
        message = records.validate_message(message)
        metadata = records.validate_metadata(metadata if metadata is not None else {})
        with self.lock:
            self._yell_if_closed("create_node")
            self._finish_pending_rollback("create_node")
            if parent_id is None:
                if root_id is None:
                    raise ValidationError("NodeStore.create_node: a root-level node needs a `root_id`.")
                if root_id not in self.roots:
                    raise NotFoundError(f"NodeStore.create_node: no such root '{root_id}'")
                parent = None
            else:
                if parent_id not in self.nodes:
                    raise NotFoundError(f"NodeStore.create_node: no such parent node '{parent_id}'")
                parent = self.nodes[parent_id]
                if root_id is not None and root_id != parent["root_id"]:
                    raise ValidationError(f"NodeStore.create_node: parent node '{parent_id}' belongs to root '{parent['root_id']}', not '{root_id}'.")
                root_id = parent["root_id"]

            node_id = self._new_id("forest-node", self.nodes)
            node = {"id": node_id,
                    "root_id": root_id,
                    "parent_id": parent_id,
                    "message": message,
                    "child_ids": [],
                    "metadata": metadata}

            if parent is None:  # single record, so a plain atomic write is enough
                try:
                    common_utils.atomic_write_json(self._node_path(node_id), node)
                except OSError as exc:
                    raise StorageError(f"NodeStore.create_node: could not write node '{node_id}': {type(exc)}: {exc}") from exc
            else:
                new_parent = copy.deepcopy(parent)
                new_parent["child_ids"].append(node_id)
                self._commit_child(node, parent, new_parent)
                self.nodes[parent_id] = new_parent

            self.nodes[node_id] = node
            logger.debug(f"NodeStore.create_node: Created node '{node_id}' (parent '{parent_id}', root '{root_id}').")
            return copy.deepcopy(node)

    def update_node_metadata(self, node_id: str, metadata: Dict) -> Dict:
        """Replace the metadata of node `node_id` with `metadata`.

        This is a replace, not a merge. To change just one thing, start from the current metadata,
        e.g. `loom.forest.tagsort.without_tag(node["metadata"], "unread")`.

        If the (normalized) new metadata is the same as the old, nothing is written.

        Returns (a copy of) the updated node record.
        """
        metadata = records.validate_metadata(metadata)
        with self.lock:
            self._yell_if_closed("update_node_metadata")
            self._finish_pending_rollback("update_node_metadata")
            if node_id not in self.nodes:
                raise NotFoundError(f"NodeStore.update_node_metadata: no such node '{node_id}'")
            node = self.nodes[node_id]
            if node["metadata"] == metadata:
                return copy.deepcopy(node)
            new_node = copy.deepcopy(node)
            new_node["metadata"] = metadata
            try:
                common_utils.atomic_write_json(self._node_path(node_id), new_node)
            except OSError as exc:
                raise StorageError(f"NodeStore.update_node_metadata: could not write node '{node_id}': {type(exc)}: {exc}") from exc
            self.nodes[node_id] = new_node
            return copy.deepcopy(new_node)

    # --------------------------------------------------------------------------------
    # Integrity

    def check_integrity(self) -> List[str]:
        """Check the in-memory forest against the tree invariants. Return a list of problems (empty if all is well).

        Checked:
          - every node's root exists,
          - every node's parent exists, belongs to the same root, and lists the node as a child exactly once,
          - every listed child exists and points back to its parent,
          - following parent links from any node reaches a root-level node (no cycles).
        """
        problems = []
        with self.lock:
            for node_id, node in self.nodes.items():
                if node["root_id"] not in self.roots:
                    problems.append(f"node '{node_id}' belongs to nonexistent root '{node['root_id']}'")
                parent_id = node["parent_id"]
                if parent_id is not None:
                    parent = self.nodes.get(parent_id)
                    if parent is None:
                        problems.append(f"node '{node_id}' links to nonexistent parent '{parent_id}'")
                    else:
                        count = parent["child_ids"].count(node_id)
                        if count != 1:
                            problems.append(f"node '{node_id}' is listed {count} times in the children of its parent '{parent_id}'")
                        if parent["root_id"] != node["root_id"]:
                            problems.append(f"node '{node_id}' belongs to root '{node['root_id']}', but its parent '{parent_id}' to '{parent['root_id']}'")
                for child_id in node["child_ids"]:
                    child = self.nodes.get(child_id)
                    if child is None:
                        problems.append(f"node '{node_id}' links to nonexistent child '{child_id}'")
                    elif child["parent_id"] != node_id:
                        problems.append(f"node '{node_id}' lists child '{child_id}', whose parent is '{child['parent_id']}'")

            # Acyclicity. Each node is walked at most once overall, so this is O(n).
            checked = set()  # nodes whose parent chain is already known to be fine, or reported
            for node_id in self.nodes:
                seen = set()
                current = node_id
                while current is not None and current not in checked and current in self.nodes:
                    if current in seen:
                        problems.append(f"parent chain of node '{node_id}' contains a cycle through '{current}'")
                        break
                    seen.add(current)
                    current = self.nodes[current]["parent_id"]
                checked.update(seen)
        return problems

    # --------------------------------------------------------------------------------
    # Internal

    def _new_id(self, prefix: str, taken: Dict) -> str:
        node_id = str(gensym(prefix))  # string form for easy JSON-ability
        while node_id in taken:  # never happens in practice, but IDs must be unique
            node_id = str(gensym(prefix))
        return node_id

    def _record_filename(self, record_id: str) -> str:
        return urllib.parse.quote(record_id, safe="") + config.record_suffix

    def _node_path(self, node_id: str) -> pathlib.Path:
        return self.nodes_dir / self._record_filename(node_id)

    def _root_path(self, root_id: str) -> pathlib.Path:
        return self.roots_dir / self._record_filename(root_id)

    def _commit_child(self, node: Dict, old_parent: Dict, new_parent: Dict) -> None:
        """Write `node` and `new_parent` as one transaction. See `create_node`."""
        journal = {"node_id": node["id"],
                   "parent": old_parent}
        try:
            common_utils.atomic_write_json(self.journal_file, journal)
        except OSError as exc:
            raise StorageError(f"NodeStore.create_node: could not write journal for node '{node['id']}': {type(exc)}: {exc}") from exc
        try:
            common_utils.atomic_write_json(self._node_path(node["id"]), node)
            common_utils.atomic_write_json(self._node_path(new_parent["id"]), new_parent)
            self.journal_file.unlink()
            common_utils.fsync_directory(self.data_dir)
        except OSError as exc:
            logger.error(f"NodeStore.create_node: write failed while creating node '{node['id']}' under '{new_parent['id']}', rolling back: {type(exc)}: {exc}")
            try:
                self._rollback(journal)
            except OSError as rollback_exc:
                logger.error(f"NodeStore.create_node: rollback failed too ({type(rollback_exc)}: {rollback_exc}); the journal is kept, and the rollback is retried before the next write (or at the next open of '{str(self.data_dir)}').")
                self._pending_journal = journal
            raise StorageError(f"NodeStore.create_node: could not write node '{node['id']}': {type(exc)}: {exc}") from exc

    def _rollback(self, journal: Dict) -> None:
        """Undo a half-done `create_node`, as described by `journal`. Deletes the journal when done."""
        parent = journal["parent"]
        common_utils.atomic_write_json(self._node_path(parent["id"]), parent)
        try:
            self._node_path(journal["node_id"]).unlink()
        except FileNotFoundError:
            pass
        try:
            self.journal_file.unlink()
        except FileNotFoundError:
            pass
        common_utils.fsync_directory(self.nodes_dir)
        common_utils.fsync_directory(self.data_dir)

    def _recover(self) -> None:
        """Roll back a transaction left over by a crashed owner, and remove stale temp files."""
        for directory in (self.data_dir, self.roots_dir, self.nodes_dir):
            for tmp_path in directory.glob("*.tmp"):
                logger.warning(f"NodeStore._recover: Removing stale temporary file '{str(tmp_path)}'.")
                try:
                    tmp_path.unlink()
                except OSError as exc:
                    raise StorageError(f"NodeStore._recover: cannot remove stale temporary file '{str(tmp_path)}': {type(exc)}: {exc}") from exc

        try:
            with open(self.journal_file, "r", encoding="utf-8") as json_file:
                journal = json.load(json_file)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as exc:
            raise CorruptStoreError(f"NodeStore._recover: cannot read journal '{str(self.journal_file)}': {type(exc)}: {exc}") from exc

        if (not isinstance(journal, dict) or set(journal.keys()) != {"node_id", "parent"} or
                not isinstance(journal["node_id"], str) or not isinstance(journal["parent"], dict) or "id" not in journal["parent"]):
            raise CorruptStoreError(f"NodeStore._recover: malformed journal '{str(self.journal_file)}'")
        logger.warning(f"NodeStore._recover: Found an unfinished node creation (node '{journal['node_id']}' under '{journal['parent']['id']}'). Rolling it back.")
        try:
            self._rollback(journal)
        except OSError as exc:
            raise StorageError(f"NodeStore._recover: rollback failed: {type(exc)}: {exc}") from exc
        logger.info("NodeStore._recover: Rollback complete.")

    def _load_records(self, directory: pathlib.Path, validate, kind: str) -> Dict[str, Dict]:
        out = {}
        for path in sorted(directory.glob(f"*{config.record_suffix}")):
            try:
                with open(path, "r", encoding="utf-8") as json_file:
                    data = json.load(json_file)
                record = validate(data)
            except (OSError, ValueError) as exc:  # `ValidationError` and `json.JSONDecodeError` are `ValueError`s
                raise CorruptStoreError(f"NodeStore._load: cannot load {kind} record '{str(path)}': {type(exc)}: {exc}") from exc
            if path.name != self._record_filename(record["id"]):
                raise CorruptStoreError(f"NodeStore._load: {kind} record '{str(path)}' has ID '{record['id']}', which does not match its filename.")
            out[record["id"]] = record
        return out

    def _load(self) -> None:
        """Load all records from disk, replacing the in-memory forest."""
        roots = self._load_records(self.roots_dir, records.validate_root_record, "root")
        nodes = self._load_records(self.nodes_dir, records.validate_node_record, "node")
        with self.lock:
            self.roots.clear()
            self.roots.update(roots)
            self.nodes.clear()
            self.nodes.update(nodes)
        plural_r = "s" if len(roots) != 1 else ""
        plural_n = "s" if len(nodes) != 1 else ""
        logger.info(f"NodeStore._load: Loaded {len(roots)} root{plural_r} and {len(nodes)} node{plural_n} from '{str(self.data_dir)}'.")
