from peek.query.identity import CompositeKey
from peek.services.hierarchy import build_children_map, expand, expand_keys


def test_children_map_inverts_parent_links_and_drops_self_loops():
    children = build_children_map([("b", "a"), ("c", "a"), ("a", "a"), ("c", "a")])
    assert children == {"a": ("b", "c")}


def test_depth_zero_or_none_returns_input_unchanged():
    children = {"a": ("b",)}
    assert expand(["a"], 0, children) == ["a"]
    assert expand(["a"], None, children) == ["a"]


def test_depth_limits_hops():
    children = {"a": ("b",), "b": ("c",), "c": ("d",)}
    assert expand(["a"], 1, children) == ["a", "b"]
    assert expand(["a"], 2, children) == ["a", "b", "c"]


def test_negative_depth_walks_the_whole_subtree():
    children = {"a": ("b", "c"), "b": ("d",)}
    assert set(expand(["a"], -1, children)) == {"a", "b", "c", "d"}


def test_cycles_terminate():
    children = {"a": ("b",), "b": ("c",), "c": ("a",)}
    assert sorted(expand(["a"], -1, children)) == ["a", "b", "c"]


def test_node_limit_returns_partial_closure():
    children = {"root": tuple(f"n{i}" for i in range(50))}
    result = expand(["root"], -1, children, node_limit=10)
    assert result[0] == "root"
    assert 1 < len(result) <= 11


def test_composite_expansion_stays_on_the_reference_instance():
    children = {("t1", "a"): (("t2", "a"),)}
    bare_children = {"t1": ("t2", "t9")}

    scoped = expand_keys([CompositeKey("t1", "a")], -1, children, bare_children)
    assert scoped == (CompositeKey("t1", "a"), CompositeKey("t2", "a"))

    # A bare reference expands across every instance
    bare = expand_keys([CompositeKey("t1")], -1, children, bare_children)
    assert bare == (CompositeKey("t1"), CompositeKey("t2"), CompositeKey("t9"))
