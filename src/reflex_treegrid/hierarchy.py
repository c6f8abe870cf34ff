"""Reconstruct a parent/child forest from flat records.

All walks are iterative so arbitrarily deep trees are safe, and cycles
are rejected when the hierarchy is built rather than discovered later by
a query.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from reflex_treegrid.models import ID_FIELD, PARENT_FIELD, Record


class HierarchyError(ValueError):
    """Base class for malformed hierarchy input."""


class DuplicateRecordIdError(HierarchyError):
    def __init__(self, record_id: Any) -> None:
        super().__init__(f"Duplicate record id: {record_id!r}")
        self.record_id = record_id


class HierarchyCycleError(HierarchyError):
    """Raised when records cannot be reached from any root.

    Every record that is not reachable from a root sits on (or below) a
    parent cycle, including a record that names itself as its parent.
    """

    def __init__(self, ids: Sequence[Any]) -> None:
        preview = ", ".join(repr(i) for i in list(ids)[:10])
        more = f" (+{len(ids) - 10} more)" if len(ids) > 10 else ""
        super().__init__(f"Parent cycle detected involving records: {preview}{more}")
        self.ids = tuple(ids)


@dataclass(frozen=True)
class TreeNode:
    """One record placed in the forest."""

    record: Record
    depth: int
    children: tuple["TreeNode", ...] = ()
    id_field: str = ID_FIELD
    parent_field: str = PARENT_FIELD

    @property
    def id(self) -> Any:
        return self.record[self.id_field]

    @property
    def parent_id(self) -> Any:
        return self.record.get(self.parent_field)

    @property
    def has_children(self) -> bool:
        return bool(self.children)


@dataclass(frozen=True)
class HierarchyStats:
    total: int
    roots: int
    leaves: int
    max_depth: int
    avg_children: float


def _is_empty_parent(value: Any) -> bool:
    return value is None or value == ""


def iter_preorder(roots: Iterable[TreeNode]) -> Iterable[TreeNode]:
    """Yield nodes depth-first, parents before children, siblings in order."""
    stack = list(reversed(tuple(roots)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


class Hierarchy:
    """An immutable forest with an id index over every node.

    Use :func:`build_hierarchy` to construct one.
    """

    def __init__(
        self,
        roots: tuple[TreeNode, ...],
        nodes: dict[Any, TreeNode],
        parents: dict[Any, Any],
    ) -> None:
        self._roots = roots
        self._nodes = nodes
        self._parents = parents

    @property
    def roots(self) -> tuple[TreeNode, ...]:
        return self._roots

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def node(self, node_id: Any) -> TreeNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown record id: {node_id!r}") from None

    def children_ids(self, node_id: Any) -> list[Any]:
        return [child.id for child in self.node(node_id).children]

    def descendant_ids(self, node_id: Any) -> list[Any]:
        """Ids of every node below *node_id*, in pre-order."""
        result: list[Any] = []
        seen: set[Any] = set()
        for node in iter_preorder(self.node(node_id).children):
            if node.id in seen:
                continue
            seen.add(node.id)
            result.append(node.id)
        return result

    def ancestor_ids(self, node_id: Any) -> list[Any]:
        """Ids of the ancestors of *node_id*, root first."""
        self.node(node_id)
        chain: list[Any] = []
        seen = {node_id}
        current = self._parents.get(node_id)
        while current is not None and current not in seen:
            seen.add(current)
            chain.append(current)
            current = self._parents.get(current)
        chain.reverse()
        return chain

    def is_ancestor(self, ancestor_id: Any, node_id: Any) -> bool:
        return ancestor_id in self.ancestor_ids(node_id)

    def expandable_ids(self) -> set[Any]:
        return {node_id for node_id, node in self._nodes.items() if node.children}

    def stats(self) -> HierarchyStats:
        total = len(self._nodes)
        parents = sum(1 for node in self._nodes.values() if node.children)
        child_count = sum(len(node.children) for node in self._nodes.values())
        return HierarchyStats(
            total=total,
            roots=len(self._roots),
            leaves=total - parents,
            max_depth=max((node.depth for node in self._nodes.values()), default=0),
            avg_children=child_count / parents if parents else 0.0,
        )


def build_hierarchy(
    records: Sequence[Record],
    *,
    id_field: str = ID_FIELD,
    parent_field: str = PARENT_FIELD,
) -> Hierarchy:
    """Link flat records into a forest.

    Roots and siblings keep their relative input order.  A record whose
    parent reference is empty or names a record that does not exist is
    promoted to a root.

    Args:
        records: Records carrying *id_field* and (optionally) *parent_field*.
        id_field: Key holding the unique record id.
        parent_field: Key holding the parent's id.

    Returns:
        A :class:`Hierarchy` whose roots are in input order.

    Raises:
        DuplicateRecordIdError: If two records share an id.
        HierarchyCycleError: If some records form a parent cycle.
    """
    by_id: dict[Any, Record] = {}
    for record in records:
        record_id = record[id_field]
        if record_id in by_id:
            raise DuplicateRecordIdError(record_id)
        by_id[record_id] = record

    root_ids: list[Any] = []
    child_ids: dict[Any, list[Any]] = {}
    parents: dict[Any, Any] = {}
    for record in records:
        record_id = record[id_field]
        parent_id = record.get(parent_field)
        if _is_empty_parent(parent_id) or parent_id not in by_id:
            root_ids.append(record_id)
            continue
        child_ids.setdefault(parent_id, []).append(record_id)
        parents[record_id] = parent_id

    # Depth-first order from the roots; anything left over is on a cycle.
    order: list[tuple[Any, int]] = []
    visited: set[Any] = set()
    stack = [(root_id, 0) for root_id in reversed(root_ids)]
    while stack:
        record_id, depth = stack.pop()
        if record_id in visited:
            continue
        visited.add(record_id)
        order.append((record_id, depth))
        for child_id in reversed(child_ids.get(record_id, ())):
            stack.append((child_id, depth + 1))

    if len(visited) != len(by_id):
        raise HierarchyCycleError([rid for rid in by_id if rid not in visited])

    # Children always follow their parent in pre-order, so walking it
    # backwards finishes every child before its parent.
    nodes: dict[Any, TreeNode] = {}
    for record_id, depth in reversed(order):
        nodes[record_id] = TreeNode(
            record=by_id[record_id],
            depth=depth,
            children=tuple(nodes[cid] for cid in child_ids.get(record_id, ())),
            id_field=id_field,
            parent_field=parent_field,
        )

    return Hierarchy(
        roots=tuple(nodes[rid] for rid in root_ids),
        nodes=nodes,
        parents=parents,
    )
