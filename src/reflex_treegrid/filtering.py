"""Per-field filters and the global search, evaluated with polars expressions.

Filters arrive in the MUI DataGrid shape (``{"field", "operator",
"value"}``) or as :class:`FieldFilter` values.  Each one is translated
into a polars expression over a typed frame built from the records; an
item that cannot be translated (unknown field or operator, field not
filterable, missing value) returns ``None`` and is skipped.  All active
filters and the global search are combined with AND.
"""

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import polars as pl

from reflex_treegrid.hierarchy import TreeNode, iter_preorder
from reflex_treegrid.models import METADATA_FIELD, FieldType, Record, Schema
from reflex_treegrid.polars_utils import (
    ROW_INDEX_COLUMN,
    _coerce_datetime,
    _coerce_numeric,
    records_to_frame,
)

_METADATA_TEXT_COLUMN: str = "__metadata_text__"

_TEXT_OPERATORS = ("contains", "equals", "startsWith", "endsWith", "isEmpty", "isNotEmpty")
_RANGE_OPERATORS = ("=", "equals", "!=", ">", ">=", "<", "<=", "between", "isEmpty", "isNotEmpty")
_BOOLEAN_OPERATORS = ("is",)
_SELECT_OPERATORS = ("isAnyOf", "is", "not", "isEmpty", "isNotEmpty")
_LIST_OPERATORS = ("hasAll", "isAnyOf", "isEmpty", "isNotEmpty")


@dataclass(frozen=True)
class FieldFilter:
    """One per-field filter.  ``operator=None`` means the type's default."""

    field_id: str
    operator: str | None = None
    value: Any = None

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "FieldFilter | None":
        """Build from a ``{"field", "operator", "value"}`` dict, ``None`` without a field."""
        field_id = item.get("field", item.get("fieldId"))
        if field_id is None:
            return None
        return cls(field_id, item.get("operator"), item.get("value"))


def default_operator(field_type: FieldType) -> str:
    if field_type in (FieldType.TEXT, FieldType.JSON):
        return "contains"
    if field_type in (FieldType.NUMBER, FieldType.DATE):
        return "="
    if field_type is FieldType.BOOLEAN:
        return "is"
    if field_type is FieldType.SELECT:
        return "isAnyOf"
    if field_type in (FieldType.MULTISELECT, FieldType.TAGS):
        return "hasAll"
    raise ValueError(f"Unsupported field type: {field_type!r}")


def operators_for(field_type: FieldType) -> tuple[str, ...]:
    """Operators understood for *field_type*, default first."""
    if field_type in (FieldType.TEXT, FieldType.JSON):
        return _TEXT_OPERATORS
    if field_type in (FieldType.NUMBER, FieldType.DATE):
        return _RANGE_OPERATORS
    if field_type is FieldType.BOOLEAN:
        return _BOOLEAN_OPERATORS
    if field_type is FieldType.SELECT:
        return _SELECT_OPERATORS
    if field_type in (FieldType.MULTISELECT, FieldType.TAGS):
        return _LIST_OPERATORS
    raise ValueError(f"Unsupported field type: {field_type!r}")


def filters_from_model(filter_model: Mapping[str, Any]) -> dict[str, FieldFilter]:
    """Translate a MUI ``filterModel`` into ``{field_id: FieldFilter}``.

    Later items on the same field replace earlier ones.
    """
    filters: dict[str, FieldFilter] = {}
    for item in filter_model.get("items", []):
        flt = FieldFilter.from_item(item)
        if flt is not None:
            filters[flt.field_id] = flt
    return filters


# ---------------------------------------------------------------------------
# Expression building
# ---------------------------------------------------------------------------

def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [v for v in value if v is not None]
    return [value]


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _text_expr(col: pl.Expr, operator: str, value: Any) -> pl.Expr | None:
    if operator == "isEmpty":
        return col.is_null() | (col == "")
    if operator == "isNotEmpty":
        return col.is_not_null() & (col != "")
    if value is None or value == "":
        return None
    lowered = col.str.to_lowercase()
    needle = str(value).lower()
    if operator == "contains":
        return lowered.str.contains(needle, literal=True)
    if operator == "equals":
        return lowered == needle
    if operator == "startsWith":
        return lowered.str.starts_with(needle)
    if operator == "endsWith":
        return lowered.str.ends_with(needle)
    return None


def _range_expr(col: pl.Expr, operator: str, value: Any, coerce: Any) -> pl.Expr | None:
    if operator == "isEmpty":
        return col.is_null()
    if operator == "isNotEmpty":
        return col.is_not_null()
    if operator == "between":
        bounds = _as_list(value)
        if len(bounds) != 2:
            return None
        low, high = coerce(bounds[0]), coerce(bounds[1])
        if low is None or high is None:
            return None
        return col.is_between(pl.lit(low), pl.lit(high), closed="both")
    target = coerce(value)
    if target is None:
        return None
    if operator in ("=", "equals"):
        return col == target
    if operator == "!=":
        return col != target
    if operator == ">":
        return col > target
    if operator == ">=":
        return col >= target
    if operator == "<":
        return col < target
    if operator == "<=":
        return col <= target
    return None


def _select_expr(col: pl.Expr, operator: str, value: Any) -> pl.Expr | None:
    if operator == "isEmpty":
        return col.is_null() | (col == "")
    if operator == "isNotEmpty":
        return col.is_not_null() & (col != "")
    if operator == "isAnyOf":
        options = [str(v) for v in _as_list(value)]
        if not options:
            return None
        return col.is_in(options)
    if value is None:
        return None
    if operator == "is":
        return col == str(value)
    if operator == "not":
        return col.is_null() | (col != str(value))
    return None


def _list_expr(col: pl.Expr, operator: str, value: Any) -> pl.Expr | None:
    if operator == "isEmpty":
        return col.is_null() | (col.list.len() == 0)
    if operator == "isNotEmpty":
        return col.is_not_null() & (col.list.len() > 0)
    wanted = [str(v) for v in _as_list(value)]
    if not wanted:
        return None
    if operator == "hasAll":
        return pl.all_horizontal([col.list.contains(v) for v in wanted])
    if operator == "isAnyOf":
        return pl.any_horizontal([col.list.contains(v) for v in wanted])
    return None


def _build_filter_expr(flt: FieldFilter, schema: Schema) -> pl.Expr | None:
    """Translate one filter into a polars expression.

    Returns:
        A polars expression, or ``None`` if the filter cannot be
        translated (unknown or non-filterable field, unknown operator,
        missing value).
    """
    fdef = schema.get(flt.field_id)
    if fdef is None or not fdef.filterable:
        return None

    field_type = fdef.type
    operator = flt.operator or default_operator(field_type)
    if operator not in operators_for(field_type):
        return None

    col = pl.col(flt.field_id)
    if field_type in (FieldType.TEXT, FieldType.JSON):
        return _text_expr(col, operator, flt.value)
    if field_type is FieldType.NUMBER:
        return _range_expr(col, operator, flt.value, _coerce_numeric)
    if field_type is FieldType.DATE:
        return _range_expr(col, operator, flt.value, _coerce_datetime)
    if field_type is FieldType.BOOLEAN:
        target = _as_bool(flt.value)
        return None if target is None else col == target
    if field_type is FieldType.SELECT:
        return _select_expr(col, operator, flt.value)
    if field_type in (FieldType.MULTISELECT, FieldType.TAGS):
        return _list_expr(col, operator, flt.value)
    raise ValueError(f"Unsupported field type: {field_type!r}")


def _normalize_filters(
    filters: Mapping[str, FieldFilter] | Iterable[FieldFilter] | None,
) -> list[FieldFilter]:
    if not filters:
        return []
    if isinstance(filters, Mapping):
        return list(filters.values())
    return list(filters)


def _metadata_text(record: Record) -> str | None:
    metadata = record.get(METADATA_FIELD)
    if not isinstance(metadata, Mapping) or not metadata:
        return None
    return json.dumps(metadata, separators=(",", ":"), default=str, ensure_ascii=False)


def matching_positions(
    records: Sequence[Record],
    schema: Schema,
    filters: Mapping[str, FieldFilter] | Iterable[FieldFilter] | None = None,
    global_filter: str = "",
) -> list[int] | None:
    """Positions of the records that pass every filter and the global search.

    Returns:
        Sorted positions into *records*, or ``None`` when no filter is
        active (every record passes).
    """
    exprs: list[pl.Expr] = []
    field_ids: list[str] = []
    for flt in _normalize_filters(filters):
        expr = _build_filter_expr(flt, schema)
        if expr is not None:
            exprs.append(expr)
            field_ids.append(flt.field_id)

    term = (global_filter or "").strip().lower()
    search_fields = schema.search_fields if term else ()
    if term:
        search_exprs = [
            pl.col(f).str.to_lowercase().str.contains(term, literal=True) for f in search_fields
        ]
        search_exprs.append(
            pl.col(_METADATA_TEXT_COLUMN).str.to_lowercase().str.contains(term, literal=True)
        )
        exprs.append(pl.any_horizontal(search_exprs).fill_null(False))

    if not exprs:
        return None

    frame = records_to_frame(records, schema, [*field_ids, *search_fields])
    if term:
        frame = frame.with_columns(
            pl.Series(_METADATA_TEXT_COLUMN, [_metadata_text(r) for r in records], dtype=pl.String)
        )
    matched = (
        frame.lazy()
        .filter(pl.all_horizontal(exprs).fill_null(False))
        .select(ROW_INDEX_COLUMN)
        .collect()
    )
    return matched.get_column(ROW_INDEX_COLUMN).to_list()


def filter_records(
    records: Sequence[Record],
    schema: Schema,
    filters: Mapping[str, FieldFilter] | Iterable[FieldFilter] | None = None,
    global_filter: str = "",
) -> list[Record]:
    """Records passing every active filter, in input order."""
    positions = matching_positions(records, schema, filters, global_filter)
    if positions is None:
        return list(records)
    return [records[i] for i in positions]


def filter_tree(
    roots: Sequence[TreeNode],
    schema: Schema,
    filters: Mapping[str, FieldFilter] | Iterable[FieldFilter] | None = None,
    global_filter: str = "",
) -> tuple[TreeNode, ...]:
    """Prune a forest to matching nodes and their ancestors.

    A node is kept when it matches or when any of its descendants is
    kept.  Depths are unchanged.
    """
    roots = tuple(roots)
    order = list(iter_preorder(roots))
    positions = matching_positions([n.record for n in order], schema, filters, global_filter)
    if positions is None:
        return roots

    matched = {id(order[i]) for i in positions}
    kept: dict[int, TreeNode] = {}
    for node in reversed(order):
        children = tuple(kept[id(c)] for c in node.children if id(c) in kept)
        if children or id(node) in matched:
            unchanged = len(children) == len(node.children) and all(
                a is b for a, b in zip(children, node.children)
            )
            if unchanged:
                kept[id(node)] = node
            else:
                kept[id(node)] = TreeNode(
                    record=node.record,
                    depth=node.depth,
                    children=children,
                    id_field=node.id_field,
                    parent_field=node.parent_field,
                )
    return tuple(kept[id(r)] for r in roots if id(r) in kept)
