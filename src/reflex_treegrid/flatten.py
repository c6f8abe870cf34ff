"""Turn a forest into the ordered row sequence a grid renders."""

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from reflex_treegrid.hierarchy import TreeNode, iter_preorder
from reflex_treegrid.models import ID_FIELD, Record


@dataclass(frozen=True)
class FlatRow:
    """A record as one visible grid row."""

    record: Record
    depth: int = 0
    is_expanded: bool = False
    has_children: bool = False


def flatten_tree(roots: Iterable[TreeNode], expanded_ids: Collection[Any]) -> list[FlatRow]:
    """Depth-first pre-order rows; children appear only under expanded nodes.

    A collapsed subtree contributes exactly its own row.
    """
    rows: list[FlatRow] = []
    stack = list(reversed(tuple(roots)))
    while stack:
        node = stack.pop()
        expanded = node.has_children and node.id in expanded_ids
        rows.append(
            FlatRow(
                record=node.record,
                depth=node.depth,
                is_expanded=expanded,
                has_children=node.has_children,
            )
        )
        if expanded:
            stack.extend(reversed(node.children))
    return rows


def flatten_records(records: Sequence[Record]) -> list[FlatRow]:
    """Rows for hierarchy-off mode: every record at depth 0, no children."""
    return [FlatRow(record=record) for record in records]


def expand_all_ids(roots: Iterable[TreeNode]) -> frozenset[Any]:
    return frozenset(node.id for node in iter_preorder(roots) if node.has_children)


def row_id(row: FlatRow, id_field: str = ID_FIELD) -> Any:
    return row.record.get(id_field)
