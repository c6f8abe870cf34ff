"""Multi-level grouping of rows with per-group aggregates.

The leaf partitions and their partial aggregates come from a single
polars ``group_by``; outer levels merge the partial states of their
children, so an ``avg`` is always the total over the numeric count of
every row below the group and never an average of averages.
"""

import functools
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import polars as pl

from reflex_treegrid.flatten import FlatRow
from reflex_treegrid.models import Aggregation, Schema, is_null, is_number, resolve_value
from reflex_treegrid.polars_utils import ROW_INDEX_COLUMN, numeric_series
from reflex_treegrid.sorting import SortKey, compare_records

EMPTY_GROUP_KEY: str = "(empty)"
NO_VALUE: str = "-"

_NUMERIC_AGGREGATIONS = (Aggregation.SUM, Aggregation.AVG, Aggregation.MIN, Aggregation.MAX)


@dataclass(frozen=True)
class GroupNode:
    """A group header and everything below it.

    ``rows`` holds :class:`FlatRow` values at the innermost level and
    nested ``GroupNode`` values otherwise.
    """

    id: str
    field_id: str
    key: str
    depth: int
    row_count: int
    rows: tuple[Any, ...] = ()
    aggregates: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_leaf_group(self) -> bool:
        return not self.rows or not isinstance(self.rows[0], GroupNode)


def group_key(value: Any) -> str:
    """Bucket key for a value; every bucket key is a string."""
    if is_null(value):
        return EMPTY_GROUP_KEY
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) if value else EMPTY_GROUP_KEY
    return str(value)


# ---------------------------------------------------------------------------
# Partial aggregate state
# ---------------------------------------------------------------------------

@dataclass
class _AggState:
    total: float = 0.0
    numeric: int = 0
    minimum: float | None = None
    maximum: float | None = None
    integral: bool = True

    def merge(self, other: "_AggState") -> None:
        self.total += other.total
        self.numeric += other.numeric
        if other.minimum is not None and (self.minimum is None or other.minimum < self.minimum):
            self.minimum = other.minimum
        if other.maximum is not None and (self.maximum is None or other.maximum > self.maximum):
            self.maximum = other.maximum
        self.integral = self.integral and other.integral


def _as_int(value: float) -> int:
    return int(round(value))


def _finalize(agg: Aggregation, state: _AggState | None, row_count: int) -> Any:
    """Final value of one aggregate.

    ``sum``, ``min`` and ``max`` come back as ``int`` when every numeric
    input was an ``int``; ``avg`` is always a float.
    """
    if agg is Aggregation.COUNT:
        return row_count
    if state is None:
        return NO_VALUE
    if agg is Aggregation.SUM:
        return _as_int(state.total) if state.integral else state.total
    if agg is Aggregation.AVG:
        return state.total / state.numeric if state.numeric else NO_VALUE
    if agg is Aggregation.MIN:
        if state.minimum is None:
            return NO_VALUE
        return _as_int(state.minimum) if state.integral else state.minimum
    if agg is Aggregation.MAX:
        if state.maximum is None:
            return NO_VALUE
        return _as_int(state.maximum) if state.integral else state.maximum
    raise ValueError(f"Unsupported aggregation: {agg!r}")


@dataclass
class _Bucket:
    key: str
    first: int
    children: dict[str, "_Bucket"] = field(default_factory=dict)
    positions: list[int] = field(default_factory=list)
    row_count: int = 0
    states: dict[str, _AggState] = field(default_factory=dict)


def _resolve_aggregations(
    schema: Schema,
    overrides: Mapping[str, Aggregation | str] | None,
) -> dict[str, Aggregation]:
    resolved = dict(schema.aggregations())
    for field_id, agg in (overrides or {}).items():
        agg = Aggregation(agg)
        if agg is Aggregation.NONE:
            resolved.pop(field_id, None)
        else:
            resolved[field_id] = agg
    return resolved


def group_rows(
    rows: Sequence[FlatRow],
    group_by: Sequence[str],
    schema: Schema,
    *,
    sorting: Sequence[SortKey] = (),
    aggregations: Mapping[str, Aggregation | str] | None = None,
) -> list[GroupNode]:
    """Partition *rows* by the *group_by* fields, outermost first.

    Buckets appear in order of first occurrence unless *sorting* has a
    key on the bucket's field, in which case that key orders the buckets
    of that level (nulls last).  Rows inside a bucket keep their order.

    Args:
        rows: Flattened rows, already filtered and sorted.
        group_by: Field ids; fields declared non-groupable are ignored.
        schema: Field definitions, for groupability and aggregations.
        sorting: Active sort keys.
        aggregations: Per-field overrides of the schema's aggregations;
            ``none`` switches a field's aggregation off.

    Returns:
        Top-level :class:`GroupNode` values, or an empty list when there
        is nothing to group by.
    """
    fields = [f for f in group_by if schema.get(f) is None or schema.get(f).groupable]
    fields = list(dict.fromkeys(fields))
    if not fields or not rows:
        return []

    aggs = _resolve_aggregations(schema, aggregations)
    numeric_fields = [f for f, a in aggs.items() if a in _NUMERIC_AGGREGATIONS]
    records = [row.record for row in rows]

    key_cols = [f"__key_{i}__" for i in range(len(fields))]
    num_cols = {f: f"__num_{i}__" for i, f in enumerate(numeric_fields)}
    int_cols = {f: f"__int_{i}__" for i, f in enumerate(numeric_fields)}

    columns = [pl.Series(ROW_INDEX_COLUMN, range(len(records)), dtype=pl.UInt32)]
    for name, field_id in zip(key_cols, fields):
        columns.append(
            pl.Series(name, [group_key(resolve_value(r, field_id)) for r in records], dtype=pl.String)
        )
    for field_id, name in num_cols.items():
        values = [resolve_value(r, field_id) for r in records]
        columns.append(numeric_series(name, values))
        columns.append(
            pl.Series(
                int_cols[field_id],
                [isinstance(v, int) if is_number(v) else None for v in values],
                dtype=pl.Boolean,
            )
        )

    agg_exprs: list[pl.Expr] = [pl.col(ROW_INDEX_COLUMN), pl.len().alias("__len__")]
    for field_id, name in num_cols.items():
        agg_exprs += [
            pl.col(int_cols[field_id]).all().alias(f"{name}int"),
            pl.col(name).sum().alias(f"{name}sum"),
            pl.col(name).count().alias(f"{name}count"),
            pl.col(name).min().alias(f"{name}min"),
            pl.col(name).max().alias(f"{name}max"),
        ]
    leaves = pl.DataFrame(columns).group_by(key_cols, maintain_order=True).agg(agg_exprs)

    top: dict[str, _Bucket] = {}
    for leaf in leaves.iter_rows(named=True):
        positions = leaf[ROW_INDEX_COLUMN]
        states = {
            field_id: _AggState(
                total=leaf[f"{name}sum"] or 0.0,
                numeric=leaf[f"{name}count"],
                minimum=leaf[f"{name}min"],
                maximum=leaf[f"{name}max"],
                integral=leaf[f"{name}int"],
            )
            for field_id, name in num_cols.items()
        }
        level = top
        for key_col in key_cols:
            key = leaf[key_col]
            bucket = level.get(key)
            if bucket is None:
                bucket = level[key] = _Bucket(key=key, first=positions[0])
            bucket.row_count += leaf["__len__"]
            for field_id, state in states.items():
                bucket.states.setdefault(field_id, _AggState()).merge(state)
            level = bucket.children
        bucket.positions.extend(positions)

    sort_by_field = {key.field_id: key for key in sorting}

    def order(buckets: Iterable[_Bucket], field_id: str) -> list[_Bucket]:
        key = sort_by_field.get(field_id)
        buckets = list(buckets)
        if key is None:
            return buckets
        return sorted(
            buckets,
            key=functools.cmp_to_key(
                lambda a, b: compare_records(records[a.first], records[b.first], [key])
            ),
        )

    def build(bucket: _Bucket, depth: int, parent_id: str) -> GroupNode:
        field_id = fields[depth]
        group_id = f"{parent_id}/{field_id}={bucket.key}" if parent_id else f"{field_id}={bucket.key}"
        if depth + 1 < len(fields):
            children: tuple[Any, ...] = tuple(
                build(child, depth + 1, group_id)
                for child in order(bucket.children.values(), fields[depth + 1])
            )
        else:
            children = tuple(rows[i] for i in sorted(bucket.positions))
        return GroupNode(
            id=group_id,
            field_id=field_id,
            key=bucket.key,
            depth=depth,
            row_count=bucket.row_count,
            rows=children,
            aggregates={
                f: _finalize(agg, bucket.states.get(f), bucket.row_count) for f, agg in aggs.items()
            },
        )

    return [build(bucket, 0, "") for bucket in order(top.values(), fields[0])]


def flatten_groups(
    groups: Sequence[GroupNode],
    expanded_group_ids: Collection[str],
) -> list[Any]:
    """Display sequence: each group header, then its rows when expanded."""
    out: list[Any] = []
    stack: list[Any] = list(reversed(groups))
    while stack:
        item = stack.pop()
        out.append(item)
        if isinstance(item, GroupNode) and item.id in expanded_group_ids:
            stack.extend(reversed(item.rows))
    return out


def all_group_ids(groups: Sequence[GroupNode]) -> frozenset[str]:
    ids: set[str] = set()
    stack = list(groups)
    while stack:
        group = stack.pop()
        ids.add(group.id)
        stack.extend(g for g in group.rows if isinstance(g, GroupNode))
    return frozenset(ids)
