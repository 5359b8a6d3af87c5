"""Unit tests for loom.forest.tagsort."""

from loom.forest.tagsort import UNREAD_TAG, has_tag, partition_by_tag, with_tag, without_tag


def _node(node_id, *tags):
    return {"id": node_id, "metadata": {"tags": list(tags)}}


def _ids(nodes):
    return [node["id"] for node in nodes]


class TestPartitionByTag:
    def test_unread_first_stable(self):
        children = [_node("r1"), _node("u1", UNREAD_TAG), _node("r2"), _node("u2", UNREAD_TAG)]
        assert _ids(partition_by_tag(children, UNREAD_TAG)) == ["u1", "u2", "r1", "r2"]

    def test_empty(self):
        assert partition_by_tag([], UNREAD_TAG) == []

    def test_none_tagged_keeps_order(self):
        children = [_node("a"), _node("b"), _node("c")]
        assert _ids(partition_by_tag(children, UNREAD_TAG)) == ["a", "b", "c"]

    def test_all_tagged_keeps_order(self):
        children = [_node("a", "t"), _node("b", "t"), _node("c", "t")]
        assert _ids(partition_by_tag(children, "t")) == ["a", "b", "c"]

    def test_other_tags_do_not_count(self):
        children = [_node("a", "starred"), _node("b", "unread", "starred")]
        assert _ids(partition_by_tag(children, "unread")) == ["b", "a"]

    def test_accepts_iterator(self):
        children = iter([_node("r1"), _node("u1", "t")])
        assert _ids(partition_by_tag(children, "t")) == ["u1", "r1"]

    def test_does_not_modify_input(self):
        children = [_node("r1"), _node("u1", "t")]
        partition_by_tag(children, "t")
        assert _ids(children) == ["r1", "u1"]


class TestTagHelpers:
    def test_has_tag(self):
        assert has_tag(_node("a", "x"), "x")
        assert not has_tag(_node("a", "x"), "y")

    def test_has_tag_without_tags_field(self):
        assert not has_tag({"id": "a", "metadata": {}}, "x")

    def test_with_tag(self):
        metadata = {"tags": ["a"], "label": "L"}
        assert with_tag(metadata, "b") == {"tags": ["a", "b"], "label": "L"}
        assert metadata == {"tags": ["a"], "label": "L"}  # input untouched

    def test_with_tag_already_present(self):
        assert with_tag({"tags": ["a", "b"]}, "a") == {"tags": ["a", "b"]}

    def test_without_tag(self):
        metadata = {"tags": ["unread", "starred"]}
        assert without_tag(metadata, "unread") == {"tags": ["starred"]}
        assert metadata == {"tags": ["unread", "starred"]}

    def test_without_tag_absent(self):
        assert without_tag({"tags": ["a"]}, "b") == {"tags": ["a"]}
