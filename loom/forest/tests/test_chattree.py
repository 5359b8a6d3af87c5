"""Unit tests for loom.forest.chattree (Forest)."""

import pytest

from loom.forest import config, records
from loom.forest.chattree import Forest
from loom.forest.errors import BusyError, InvalidRangeError, NotFoundError, ValidationError
from loom.forest.tagsort import UNREAD_TAG


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def forest(tmp_path):
    f = Forest(tmp_path / "data")
    yield f
    f.close()


@pytest.fixture
def root(forest):
    return forest.create_root(records.create_root_config(model="gpt-4"))


def _user(content):
    return records.create_chat_message(role="user", content=content)


def _ai(content):
    return records.create_chat_message(role="assistant", content=content)


@pytest.fixture
def chain(forest, root):
    """A -> B -> C linear chain."""
    a = forest.create_message_node(None, _user("a"), root_id=root["id"])
    b = forest.create_message_node(a["id"], _ai("b"))
    c = forest.create_message_node(b["id"], _user("c"))
    return forest, a, b, c


@pytest.fixture
def branching(forest, root):
    """A user message with three alternative AI replies.

         q
       / | \\
      r1 r2 r3
    """
    q = forest.create_message_node(None, _user("q"), root_id=root["id"])
    r1 = forest.create_message_node(q["id"], _ai("r1"))
    r2 = forest.create_message_node(q["id"], _ai("r2"), tags=[UNREAD_TAG])
    r3 = forest.create_message_node(q["id"], _ai("r3"), tags=[UNREAD_TAG])
    return forest, q, r1, r2, r3


def _ids(nodes):
    return [node["id"] for node in nodes]


# ---------------------------------------------------------------------------
# The basic scenario
# ---------------------------------------------------------------------------

class TestScenario:
    def test_hi_hello(self, forest):
        r = forest.create_root(records.create_root_config(model="gpt-4"))
        n1 = forest.create_message_node(None, _user("hi"), root_id=r["id"])
        n2 = forest.create_message_node(n1["id"], _ai("hello"))

        result = forest.get_path(to=n2["id"])
        assert _ids(result.path) == [n1["id"], n2["id"]]
        assert result.root == r
        assert [node["message"]["content"] for node in result.path] == ["hi", "hello"]
        assert _ids(forest.get_children(n1["id"])) == [n2["id"]]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreateMessageNode:
    def test_parent_child_consistency(self, branching):
        f, q, r1, r2, r3 = branching
        for child in (r1, r2, r3):
            assert f.get_node(child["id"])["parent_id"] == q["id"]
            assert _ids(f.get_children(q["id"])).count(child["id"]) == 1

    def test_tags_are_caller_supplied(self, branching):
        f, q, r1, r2, r3 = branching
        assert f.get_node(r1["id"])["metadata"]["tags"] == []
        assert f.get_node(r2["id"])["metadata"]["tags"] == [UNREAD_TAG]

    def test_no_implicit_unread_tag(self, chain):
        f, a, b, c = chain
        for node in (a, b, c):
            assert f.get_node(node["id"])["metadata"] == {"tags": []}

    def test_unknown_parent(self, forest):
        with pytest.raises(NotFoundError):
            forest.create_message_node("nope", _user("x"))

    def test_root_level_needs_root(self, forest):
        with pytest.raises(ValidationError):
            forest.create_message_node(None, _user("x"))

    def test_malformed_message(self, forest, root):
        with pytest.raises(ValidationError):
            forest.create_message_node(None, {"role": "user", "content": "x"}, root_id=root["id"])

    def test_bad_tags(self, forest, root):
        with pytest.raises(ValidationError):
            forest.create_message_node(None, _user("x"), root_id=root["id"], tags="unread")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

class TestRead:
    def test_get_node_unknown_is_none(self, forest):
        assert forest.get_node("nope") is None

    def test_get_children_unknown_raises(self, forest):
        with pytest.raises(NotFoundError):
            forest.get_children("nope")

    def test_get_children_leaf(self, chain):
        f, _a, _b, c = chain
        assert f.get_children(c["id"]) == []

    def test_get_root(self, forest, root):
        assert forest.get_root(root["id"]) == root
        assert forest.get_root("nope") is None

    def test_get_all_roots(self, forest, root):
        assert _ids(forest.get_all_roots()) == [root["id"]]

    def test_get_root_nodes(self, forest, root):
        a = forest.create_message_node(None, _user("a"), root_id=root["id"])
        b = forest.create_message_node(None, _user("b"), root_id=root["id"])
        assert _ids(forest.get_root_nodes(root["id"])) == [a["id"], b["id"]]

    def test_acyclic_termination(self, chain):
        f, a, b, c = chain
        for node, depth in ((a, 1), (b, 2), (c, 3)):
            steps = 0
            current = f.get_node(node["id"])
            while current["parent_id"] is not None:
                current = f.get_node(current["parent_id"])
                steps += 1
                assert steps < depth
            assert steps == depth - 1


class TestSiblings:
    def test_siblings_of_child(self, branching):
        f, _q, r1, r2, r3 = branching
        siblings, idx = f.get_siblings(r2["id"])
        assert _ids(siblings) == [r1["id"], r2["id"], r3["id"]]
        assert idx == 1

    def test_siblings_of_root_level_node(self, forest, root):
        a = forest.create_message_node(None, _user("a"), root_id=root["id"])
        b = forest.create_message_node(None, _user("b"), root_id=root["id"])
        siblings, idx = forest.get_siblings(b["id"])
        assert _ids(siblings) == [a["id"], b["id"]]
        assert idx == 1

    def test_only_child(self, chain):
        f, _a, b, _c = chain
        siblings, idx = f.get_siblings(b["id"])
        assert _ids(siblings) == [b["id"]]
        assert idx == 0

    def test_unknown(self, forest):
        with pytest.raises(NotFoundError):
            forest.get_siblings("nope")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

class TestGetPath:
    def test_full_path(self, chain):
        f, a, b, c = chain
        result = f.get_path(to=c["id"])
        assert _ids(result.path) == [a["id"], b["id"], c["id"]]
        assert result.path[0]["parent_id"] is None

    def test_path_length_is_depth(self, chain):
        f, a, b, c = chain
        assert len(f.get_path(to=a["id"]).path) == 1
        assert len(f.get_path(to=b["id"]).path) == 2
        assert len(f.get_path(to=c["id"]).path) == 3

    def test_from_ancestor(self, chain):
        f, a, b, c = chain
        assert _ids(f.get_path(to=c["id"], from_=a["id"]).path) == [b["id"], c["id"]]

    def test_from_self_is_empty_but_has_root(self, chain, root):
        f, _a, _b, c = chain
        result = f.get_path(to=c["id"], from_=c["id"])
        assert result.path == []
        assert result.root == root

    def test_from_non_ancestor(self, branching):
        f, _q, r1, r2, _r3 = branching
        with pytest.raises(InvalidRangeError):
            f.get_path(to=r1["id"], from_=r2["id"])

    def test_from_unknown(self, chain):
        f, _a, _b, c = chain
        with pytest.raises(InvalidRangeError):
            f.get_path(to=c["id"], from_="nope")

    def test_to_unknown(self, forest):
        with pytest.raises(NotFoundError):
            forest.get_path(to="nope")

    def test_root_is_the_owning_root(self, forest):
        r1 = forest.create_root(records.create_root_config(model="one"))
        r2 = forest.create_root(records.create_root_config(model="two"))
        forest.create_message_node(None, _user("x"), root_id=r1["id"])
        n = forest.create_message_node(None, _user("y"), root_id=r2["id"])
        assert forest.get_path(to=n["id"]).root == r2

    def test_linearize(self, chain):
        f, a, b, c = chain
        messages = f.linearize(c["id"])
        assert messages == [a["message"], b["message"], c["message"]]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

class TestUpdateNodeMetadata:
    def test_clear_unread(self, branching):
        f, _q, _r1, r2, _r3 = branching
        node = f.get_node(r2["id"])
        metadata = dict(node["metadata"], tags=[t for t in node["metadata"]["tags"] if t != UNREAD_TAG])
        updated = f.update_node_metadata(r2["id"], metadata)
        assert updated["metadata"]["tags"] == []

    def test_idempotent(self, chain):
        f, a, _b, _c = chain
        f.update_node_metadata(a["id"], {"tags": ["starred"], "label": "intro"})
        before = f.get_node(a["id"])
        f.update_node_metadata(a["id"], {"tags": ["starred"], "label": "intro"})
        assert f.get_node(a["id"]) == before

    def test_unknown(self, forest):
        with pytest.raises(NotFoundError):
            forest.update_node_metadata("nope", {"tags": []})


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_second_forest_on_same_directory_is_busy(self, forest):
        with pytest.raises(BusyError):
            Forest(forest.datastore.data_dir)

    def test_persists_across_reopen(self, tmp_path):
        data_dir = tmp_path / "data"
        with Forest(data_dir) as f1:
            r = f1.create_root(records.create_root_config(model="gpt-4", system_prompt="Be nice."))
            n1 = f1.create_message_node(None, _user("hi"), root_id=r["id"])
            n2 = f1.create_message_node(n1["id"], _ai("hello"), tags=[UNREAD_TAG])
        with Forest(data_dir) as f2:
            result = f2.get_path(to=n2["id"])
            assert _ids(result.path) == [n1["id"], n2["id"]]
            assert result.root["config"]["system_prompt"] == "Be nice."
            assert f2.get_node(n2["id"])["metadata"]["tags"] == [UNREAD_TAG]

    def test_default_data_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "forest_data_dir", tmp_path / "default")
        with Forest() as f:
            assert f.datastore.data_dir == (tmp_path / "default").resolve()
