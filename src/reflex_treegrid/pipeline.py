"""Grid state and the row-derivation pipeline.

:class:`GridState` is an immutable value owned by the consumer; every
transition returns a new state.  :func:`derive` turns records, a schema
and a state into a :class:`DerivedView`:

* tree mode: build hierarchy -> filter (keeping ancestors of matches)
  -> sort siblings -> flatten by expansion
* flat mode: filter -> sort -> one row per record

then group and aggregate, lay out the display rows, paginate, and
compute the viewport window.  :class:`GridPipeline` runs the same stages
but reuses a stage's previous output while its inputs are unchanged.
"""

import dataclasses
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from reflex_treegrid.filtering import FieldFilter, filter_records, filter_tree
from reflex_treegrid.flatten import FlatRow, expand_all_ids, flatten_records, flatten_tree
from reflex_treegrid.grouping import GroupNode, all_group_ids, flatten_groups, group_rows
from reflex_treegrid.hierarchy import Hierarchy, build_hierarchy
from reflex_treegrid.models import Aggregation, ColumnDef, Record, Schema
from reflex_treegrid.sorting import SortDirection, SortKey, sort_records, sort_tree
from reflex_treegrid.viewport import ViewportRange, compute_window

_DEFAULT_PAGE_SIZE: int = 100
_DEFAULT_ROW_HEIGHT: int = 42
_DEFAULT_OVERSCAN: int = 5
_DEFAULT_VIEWPORT_HEIGHT: int = 600

_VALUELESS_OPERATORS = ("isEmpty", "isNotEmpty")


@dataclass(frozen=True)
class PaginationState:
    page: int = 0
    page_size: int = _DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.page < 0:
            raise ValueError(f"page must not be negative, got {self.page}")
        if self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")


@dataclass(frozen=True)
class ViewportState:
    scroll_offset: float = 0.0
    viewport_height: float = _DEFAULT_VIEWPORT_HEIGHT
    row_height: float = _DEFAULT_ROW_HEIGHT
    overscan: int = _DEFAULT_OVERSCAN


@dataclass(frozen=True)
class GridState:
    """Everything that decides which rows a grid shows.

    ``pagination=None`` shows every row on one scrolling page.
    """

    sorting: tuple[SortKey, ...] = ()
    grouping: tuple[str, ...] = ()
    filters: Mapping[str, FieldFilter] = field(default_factory=dict)
    global_filter: str = ""
    expanded_ids: frozenset[Any] = frozenset()
    expanded_group_ids: frozenset[str] = frozenset()
    hierarchy: bool = True
    pagination: PaginationState | None = None
    viewport: ViewportState = ViewportState()
    column_visibility: Mapping[str, bool] = field(default_factory=dict)
    column_order: tuple[str, ...] = ()
    column_sizing: Mapping[str, int] = field(default_factory=dict)
    aggregations: Mapping[str, Aggregation] = field(default_factory=dict)

    def _replace(self, **changes: Any) -> "GridState":
        return dataclasses.replace(self, **changes)

    def _first_page(self) -> PaginationState | None:
        if self.pagination is None or self.pagination.page == 0:
            return self.pagination
        return dataclasses.replace(self.pagination, page=0)

    # -- sorting ------------------------------------------------------------

    def with_sort(
        self,
        field_id: str,
        direction: SortDirection | None,
        multi: bool = False,
    ) -> "GridState":
        """Set, add, update or remove the sort key for *field_id*.

        ``direction=None`` removes the key.  Without *multi* the key
        replaces every other key; with it the key is updated in place or
        appended.
        """
        if direction is None:
            return self._replace(sorting=tuple(k for k in self.sorting if k.field_id != field_id))
        key = SortKey(field_id, direction)
        if not multi:
            return self._replace(sorting=(key,))
        if any(k.field_id == field_id for k in self.sorting):
            return self._replace(
                sorting=tuple(key if k.field_id == field_id else k for k in self.sorting)
            )
        return self._replace(sorting=self.sorting + (key,))

    def with_sorting(self, keys: Sequence[SortKey]) -> "GridState":
        return self._replace(sorting=tuple(keys))

    # -- filtering ----------------------------------------------------------

    def with_filter(self, field_id: str, operator: str | None = None, value: Any = None) -> "GridState":
        """Set the filter on *field_id*; an empty value removes it.

        Changing filters returns to the first page.
        """
        filters = dict(self.filters)
        empty = value is None or value == "" or value == [] or value == ()
        if empty and operator not in _VALUELESS_OPERATORS:
            filters.pop(field_id, None)
        else:
            filters[field_id] = FieldFilter(field_id, operator, value)
        return self._replace(filters=filters, pagination=self._first_page())

    def with_filters(self, filters: Mapping[str, FieldFilter]) -> "GridState":
        return self._replace(filters=dict(filters), pagination=self._first_page())

    def without_filter(self, field_id: str) -> "GridState":
        return self.with_filter(field_id, None, None)

    def with_global_filter(self, text: str) -> "GridState":
        return self._replace(global_filter=text or "", pagination=self._first_page())

    def clear_filters(self) -> "GridState":
        return self._replace(filters={}, global_filter="", pagination=self._first_page())

    # -- tree expansion -----------------------------------------------------

    def toggle_expanded(self, node_id: Any) -> "GridState":
        return self._replace(expanded_ids=self.expanded_ids ^ {node_id})

    def expand_all(self, node_ids: Sequence[Any] | frozenset[Any]) -> "GridState":
        return self._replace(expanded_ids=frozenset(node_ids))

    def collapse_all(self) -> "GridState":
        return self._replace(expanded_ids=frozenset())

    def with_hierarchy(self, enabled: bool) -> "GridState":
        return self._replace(hierarchy=enabled)

    # -- grouping -----------------------------------------------------------

    def add_group(self, field_id: str) -> "GridState":
        if field_id in self.grouping:
            return self
        return self._replace(grouping=self.grouping + (field_id,))

    def remove_group(self, field_id: str) -> "GridState":
        return self._replace(grouping=tuple(f for f in self.grouping if f != field_id))

    def move_group(self, from_index: int, to_index: int) -> "GridState":
        grouping = list(self.grouping)
        if not (0 <= from_index < len(grouping) and 0 <= to_index < len(grouping)):
            raise ValueError(
                f"Group indices out of range: {from_index} -> {to_index} "
                f"(have {len(grouping)} groups)"
            )
        grouping.insert(to_index, grouping.pop(from_index))
        return self._replace(grouping=tuple(grouping))

    def toggle_group(self, group_id: str) -> "GridState":
        return self._replace(expanded_group_ids=self.expanded_group_ids ^ {group_id})

    def expand_all_groups(self, group_ids: Sequence[str] | frozenset[str]) -> "GridState":
        return self._replace(expanded_group_ids=frozenset(group_ids))

    def collapse_all_groups(self) -> "GridState":
        return self._replace(expanded_group_ids=frozenset())

    def with_aggregation(self, field_id: str, aggregation: Aggregation | str) -> "GridState":
        return self._replace(aggregations={**self.aggregations, field_id: Aggregation(aggregation)})

    # -- paging & scrolling -------------------------------------------------

    def with_scroll(self, scroll_offset: float, viewport_height: float | None = None) -> "GridState":
        changes: dict[str, Any] = {"scroll_offset": scroll_offset}
        if viewport_height is not None:
            changes["viewport_height"] = viewport_height
        return self._replace(viewport=dataclasses.replace(self.viewport, **changes))

    def with_page(self, page: int, page_size: int | None = None) -> "GridState":
        current = self.pagination or PaginationState()
        return self._replace(
            pagination=PaginationState(page=page, page_size=page_size or current.page_size)
        )

    # -- columns ------------------------------------------------------------

    def toggle_column_visibility(self, field_id: str, default: bool = True) -> "GridState":
        visible = self.column_visibility.get(field_id, default)
        return self._replace(column_visibility={**self.column_visibility, field_id: not visible})

    def resize_column(self, field_id: str, width: int) -> "GridState":
        if width <= 0:
            raise ValueError(f"Column width must be positive, got {width}")
        return self._replace(column_sizing={**self.column_sizing, field_id: width})

    def reorder_columns(self, field_ids: Sequence[str]) -> "GridState":
        return self._replace(column_order=tuple(field_ids))


# ---------------------------------------------------------------------------
# Derived view
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DerivedView:
    """Output of :func:`derive`.

    Attributes:
        rows: Filtered, sorted and flattened record rows.
        groups: Top-level groups (empty when not grouping).
        display_rows: Rows of the current page: group headers and record
            rows in display order.
        window: The viewport range over *display_rows*.
        total_display_rows: Display rows across all pages.
    """

    rows: tuple[FlatRow, ...]
    groups: tuple[GroupNode, ...]
    display_rows: tuple[Any, ...]
    window: ViewportRange
    total_display_rows: int = 0

    def visible_rows(self) -> tuple[Any, ...]:
        return self.display_rows[self.window.start_index : self.window.end_index + 1]


def active_sort_keys(schema: Schema, keys: Sequence[SortKey]) -> tuple[SortKey, ...]:
    """Drop keys on fields declared non-sortable."""
    active = []
    for key in keys:
        fdef = schema.get(key.field_id)
        if fdef is None or fdef.sortable:
            active.append(key)
    return tuple(active)


def _same(a: Any, b: Any) -> bool:
    return a is b or a == b


class _StageCache:
    """Remembers the last inputs and output of one stage."""

    def __init__(self) -> None:
        self._inputs: tuple[Any, ...] | None = None
        self._value: Any = None
        self.hits = 0

    def get(self, inputs: tuple[Any, ...], compute: Callable[[], Any]) -> Any:
        if self._inputs is not None and len(inputs) == len(self._inputs) and all(
            _same(a, b) for a, b in zip(inputs, self._inputs)
        ):
            self.hits += 1
            return self._value
        self._value = compute()
        self._inputs = inputs
        return self._value


class GridPipeline:
    """Runs :func:`derive` stage by stage, reusing unchanged stage outputs.

    The record sequence is snapshotted into a tuple on every call, so a
    list the caller edits in place (``records[i] = new_record``) is seen
    as new input.  Unchanged records are matched by identity, element by
    element; records themselves are treated as immutable values.
    """

    def __init__(self) -> None:
        self._hierarchy = _StageCache()
        self._filter = _StageCache()
        self._sort = _StageCache()
        self._flatten = _StageCache()
        self._group = _StageCache()
        self._display = _StageCache()

    def hierarchy(self, records: Sequence[Record]) -> Hierarchy:
        snapshot = tuple(records)
        return self._hierarchy.get((snapshot,), lambda: build_hierarchy(snapshot))

    def derive(self, records: Sequence[Record], schema: Schema, state: GridState) -> DerivedView:
        records = tuple(records)
        keys = active_sort_keys(schema, state.sorting)

        if state.hierarchy:
            forest = self.hierarchy(records)
            roots = self._filter.get(
                (forest, schema, True, state.filters, state.global_filter),
                lambda: filter_tree(forest.roots, schema, state.filters, state.global_filter),
            )
            ordered = self._sort.get((roots, keys), lambda: sort_tree(roots, keys))
            rows = self._flatten.get(
                (ordered, state.expanded_ids),
                lambda: tuple(flatten_tree(ordered, state.expanded_ids)),
            )
        else:
            kept = self._filter.get(
                (records, schema, False, state.filters, state.global_filter),
                lambda: filter_records(records, schema, state.filters, state.global_filter),
            )
            ordered = self._sort.get((kept, keys), lambda: sort_records(kept, keys))
            rows = self._flatten.get((ordered, None), lambda: tuple(flatten_records(ordered)))

        groups = self._group.get(
            (rows, schema, state.grouping, keys, state.aggregations),
            lambda: tuple(
                group_rows(rows, state.grouping, schema, sorting=keys, aggregations=state.aggregations)
            ),
        )
        display = self._display.get(
            (rows, groups, state.expanded_group_ids),
            lambda: tuple(flatten_groups(groups, state.expanded_group_ids)) if groups else rows,
        )

        page_rows = display
        if state.pagination is not None:
            start = state.pagination.page * state.pagination.page_size
            page_rows = display[start : start + state.pagination.page_size]

        vp = state.viewport
        window = compute_window(
            len(page_rows), vp.row_height, vp.scroll_offset, vp.viewport_height, vp.overscan
        )
        return DerivedView(
            rows=rows,
            groups=groups,
            display_rows=page_rows,
            window=window,
            total_display_rows=len(display),
        )

    def expand_all_ids(self, records: Sequence[Record]) -> frozenset[Any]:
        return expand_all_ids(self.hierarchy(records).roots)


def derive(records: Sequence[Record], schema: Schema, state: GridState) -> DerivedView:
    """Derive the rows to display for *state*.  Pure; nothing is cached."""
    return GridPipeline().derive(records, schema, state)


def group_ids(view: DerivedView) -> frozenset[str]:
    return all_group_ids(view.groups)


# ---------------------------------------------------------------------------
# Column state
# ---------------------------------------------------------------------------

_COLUMN_ATTRS: tuple[str, ...] = (
    "field",
    "header_name",
    "width",
    "min_width",
    "max_width",
    "type",
    "sortable",
    "filterable",
    "groupable",
    "resizable",
    "hide",
    "aggregation",
    "description",
    "value_options",
)


def apply_column_state(columns: Sequence[ColumnDef], state: GridState) -> list[ColumnDef]:
    """Apply the state's column visibility, sizing and order.

    Columns named in ``column_order`` come first, in that order; the
    rest follow in their current order.  Widths are clamped to the
    column's min/max.
    """
    updated: list[ColumnDef] = []
    for col in columns:
        props = {attr: getattr(col, attr) for attr in _COLUMN_ATTRS}
        if col.field in state.column_visibility:
            props["hide"] = not state.column_visibility[col.field]
        if col.field in state.column_sizing:
            width = state.column_sizing[col.field]
            if col.min_width is not None:
                width = max(width, col.min_width)
            if col.max_width is not None:
                width = min(width, col.max_width)
            props["width"] = width
        updated.append(ColumnDef(**props))

    rank = {field_id: i for i, field_id in enumerate(state.column_order)}
    return sorted(updated, key=lambda c: rank.get(c.field, len(rank)))
