from reflex_treegrid.flatten import FlatRow, expand_all_ids, flatten_records, flatten_tree
from reflex_treegrid.hierarchy import build_hierarchy


def _ids(rows):
    return [r.record["id"] for r in rows]


def test_collapsed_tree_shows_roots_only(task_records):
    tree = build_hierarchy(task_records)
    rows = flatten_tree(tree.roots, set())

    assert _ids(rows) == ["P1", "P2"]
    assert all(r.has_children and not r.is_expanded for r in rows)


def test_expanded_node_emits_children_in_preorder(task_records):
    tree = build_hierarchy(task_records)
    rows = flatten_tree(tree.roots, {"P1", "T2"})

    assert _ids(rows) == ["P1", "T1", "T2", "T3", "P2"]
    assert [r.depth for r in rows] == [0, 1, 1, 2, 0]
    assert rows[0].is_expanded and rows[2].is_expanded
    assert not rows[1].has_children


def test_collapsed_subtree_contributes_one_row(task_records):
    tree = build_hierarchy(task_records)
    rows = flatten_tree(tree.roots, {"P1"})

    assert _ids(rows) == ["P1", "T1", "T2", "P2"]
    assert rows[2].has_children and not rows[2].is_expanded


def test_expanded_id_on_leaf_is_not_marked_expanded(task_records):
    tree = build_hierarchy(task_records)
    rows = flatten_tree(tree.roots, {"P1", "T1"})
    t1 = rows[1]
    assert t1.record["id"] == "T1"
    assert not t1.is_expanded


def test_expand_all_ids(task_records):
    tree = build_hierarchy(task_records)
    assert expand_all_ids(tree.roots) == frozenset({"P1", "T2", "P2"})


def test_flatten_records_is_flat():
    records = [{"id": 1}, {"id": 2}]
    assert flatten_records(records) == [FlatRow(records[0]), FlatRow(records[1])]


def test_flatten_returns_new_sequence(task_records):
    tree = build_hierarchy(task_records)
    first = flatten_tree(tree.roots, set())
    second = flatten_tree(tree.roots, set())
    assert first == second
    assert first is not second
