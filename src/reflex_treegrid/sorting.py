"""Multi-key, stable, type-aware ordering of records, trees and flattened rows.

Comparison happens pair by pair in Python rather than through a polars
``sort`` because values of one field may be of mixed types (a metadata
field is free-form) and every pair must still compare without raising.
"""

import functools
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Literal

from pyuca import Collator

from reflex_treegrid.flatten import FlatRow
from reflex_treegrid.hierarchy import TreeNode, iter_preorder
from reflex_treegrid.models import Record, is_null, is_number, resolve_value

SortDirection = Literal["asc", "desc"]

_DIRECTIONS: tuple[str, ...] = ("asc", "desc")


@dataclass(frozen=True)
class SortKey:
    field_id: str
    direction: SortDirection = "asc"

    def __post_init__(self) -> None:
        if self.direction not in _DIRECTIONS:
            raise ValueError(
                f"Invalid sort direction {self.direction!r} for field {self.field_id!r}; "
                f"expected 'asc' or 'desc'"
            )


def sort_keys_from_model(sort_model: Iterable[Mapping[str, Any]]) -> tuple[SortKey, ...]:
    """Translate a sort model into :class:`SortKey` values.

    Accepts the MUI DataGrid shape::

        [{"field": "priority", "sort": "desc"}, {"field": "title", "sort": "asc"}]

    as well as ``{"fieldId": ..., "direction": ...}`` entries.  Entries
    without a field or with an empty direction are skipped.
    """
    keys: list[SortKey] = []
    for entry in sort_model:
        field_id = entry.get("field", entry.get("fieldId"))
        direction = entry.get("sort", entry.get("direction", "asc"))
        if field_id is None or not direction:
            continue
        keys.append(SortKey(field_id, direction))
    return tuple(keys)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

def _as_instant(value: date) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time())


def _sign(diff: float) -> int:
    return (diff > 0) - (diff < 0)


@functools.lru_cache(maxsize=1)
def _collator() -> Collator:
    # Loads the DUCET table once per process.
    return Collator()


@functools.lru_cache(maxsize=65536)
def _collation_key(text: str) -> tuple[int, ...]:
    return _collator().sort_key(text)


def _collate(a: str, b: str) -> int:
    ka, kb = _collation_key(a), _collation_key(b)
    if ka != kb:
        return (ka > kb) - (ka < kb)
    # Strings that collate equal still order deterministically.
    return (a > b) - (a < b)


def compare_values(a: Any, b: Any) -> int:
    """Three-way comparison of two non-null values.

    Two strings use the Unicode collation algorithm (so "apple" <
    "banana" < "Cherry"), two numbers their difference, two dates their
    instant.  Any other pair falls back to collating the string forms so
    mixed types never raise.
    """
    if isinstance(a, str) and isinstance(b, str):
        return _collate(a, b)
    if is_number(a) and is_number(b):
        return _sign(a - b)
    if isinstance(a, date) and isinstance(b, date):
        ia, ib = _as_instant(a), _as_instant(b)
        return (ia > ib) - (ia < ib)
    return _collate(str(a), str(b))


def compare_records(a: Record, b: Record, keys: Sequence[SortKey]) -> int:
    """Compare two records key by key; nulls go last in either direction."""
    for key in keys:
        va = resolve_value(a, key.field_id)
        vb = resolve_value(b, key.field_id)
        a_null, b_null = is_null(va), is_null(vb)
        if a_null and b_null:
            continue
        if a_null:
            return 1
        if b_null:
            return -1
        result = compare_values(va, vb)
        if result:
            return -result if key.direction == "desc" else result
    return 0


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------

def sort_records(records: Iterable[Record], keys: Sequence[SortKey]) -> list[Record]:
    """Stable sort of flat records; with no keys the input order is kept."""
    records = list(records)
    if not keys:
        return records
    return sorted(records, key=functools.cmp_to_key(lambda a, b: compare_records(a, b, keys)))


def _sort_nodes(nodes: Iterable[TreeNode], keys: Sequence[SortKey]) -> list[TreeNode]:
    return sorted(
        nodes,
        key=functools.cmp_to_key(lambda a, b: compare_records(a.record, b.record, keys)),
    )


def sort_tree(roots: Sequence[TreeNode], keys: Sequence[SortKey]) -> tuple[TreeNode, ...]:
    """Sort every sibling group independently.

    Depth and parentage are unchanged; only sibling order moves.
    """
    roots = tuple(roots)
    if not keys:
        return roots
    order = list(iter_preorder(roots))
    rebuilt: dict[int, TreeNode] = {}
    for node in reversed(order):
        children = tuple(_sort_nodes((rebuilt[id(c)] for c in node.children), keys))
        rebuilt[id(node)] = TreeNode(
            record=node.record,
            depth=node.depth,
            children=children,
            id_field=node.id_field,
            parent_field=node.parent_field,
        )
    return tuple(_sort_nodes((rebuilt[id(r)] for r in roots), keys))


def sort_rows(rows: Sequence[FlatRow], keys: Sequence[SortKey]) -> list[FlatRow]:
    """Sort an already flattened row sequence without detaching subtrees.

    Rows are split into sibling blocks by depth: a row owns every
    following row with a greater depth.  Each block is sorted on its own
    and subtrees move with their head row.
    """
    if not keys or len(rows) < 2:
        return list(rows)

    # (row, owned children) entries; index 0 of the stack is a virtual root.
    top: list[list[Any]] = []
    stack: list[tuple[int, list[list[Any]]]] = [(-1, top)]
    for row in rows:
        while len(stack) > 1 and stack[-1][0] >= row.depth:
            stack.pop()
        entry: list[Any] = [row, []]
        stack[-1][1].append(entry)
        stack.append((row.depth, entry[1]))

    by_record = functools.cmp_to_key(lambda a, b: compare_records(a[0].record, b[0].record, keys))
    result: list[FlatRow] = []
    pending: list[list[Any]] = list(reversed(sorted(top, key=by_record)))
    while pending:
        row, children = pending.pop()
        result.append(row)
        pending.extend(reversed(sorted(children, key=by_record)))
    return result
