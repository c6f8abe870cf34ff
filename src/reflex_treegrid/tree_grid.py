"""Reflex state mixin exposing a derived tree grid as reactive vars.

Users inherit from :class:`TreeGridMixin` **and** ``rx.State``, hand it
records (or a streaming fetch function) and bind the ``tg_*`` vars and
``handle_tg_*`` handlers to their own components.

Records, the schema, the :class:`GridState` and the memoizing
:class:`GridPipeline` are not JSON-serialisable, so they live in a
module-level registry keyed by the state class name; only the visible
window of rows is ever serialised into state.

Typical usage::

    from reflex_treegrid import TreeGridMixin, read_records

    class MyState(TreeGridMixin, rx.State):
        def load_data(self):
            records, schema = read_records(Path("tasks.parquet"))
            yield from self.set_records(records, schema)
"""

import time
from collections.abc import Sequence
from typing import Any

import reflex as rx

from reflex_treegrid.filtering import filters_from_model
from reflex_treegrid.models import Record, Schema
from reflex_treegrid.pipeline import (
    _DEFAULT_ROW_HEIGHT,
    _DEFAULT_VIEWPORT_HEIGHT,
    GridPipeline,
    GridState,
    ViewportState,
    apply_column_state,
    group_ids,
)
from reflex_treegrid.polars_utils import build_column_defs, rows_to_dicts
from reflex_treegrid.sorting import sort_keys_from_model
from reflex_treegrid.streaming import _DEFAULT_BATCH_SIZE, Fetch, StreamingProvider


# ---------------------------------------------------------------------------
# Module-level grid cache
# ---------------------------------------------------------------------------

class _TreeGridCache:
    """Holds the records and derivation state of one grid outside Reflex state."""

    def __init__(self) -> None:
        self.records: list[Record] = []
        self.schema: Schema = Schema()
        self.state: GridState = GridState()
        self.pipeline: GridPipeline = GridPipeline()
        self.provider: StreamingProvider | None = None
        self.columns: list[Any] = []
        self.filter_model: dict[str, Any] = {}


_cache_registry: dict[str, _TreeGridCache] = {}


def _get_cache(cache_id: str) -> _TreeGridCache:
    """Return (or create) the cache entry for *cache_id*."""
    if cache_id not in _cache_registry:
        _cache_registry[cache_id] = _TreeGridCache()
    return _cache_registry[cache_id]


# ---------------------------------------------------------------------------
# TreeGridMixin
# ---------------------------------------------------------------------------

class TreeGridMixin(rx.State, mixin=True):
    """Reflex State mixin for hierarchical, grouped, windowed grids.

    This is a Reflex **mixin** (``mixin=True``): every subclass gets its
    own independent set of ``tg_*`` vars, so several grids on one page
    do not interfere.  Subclasses must also inherit from ``rx.State``::

        class TaskGrid(TreeGridMixin, rx.State):
            ...

    Only the rows inside the viewport window are sent to the frontend;
    ``tg_offset_y`` and ``tg_total_height`` let a virtual scroller
    position them.
    """

    # -- Frontend state vars --
    tg_rows: list[dict[str, Any]] = []
    tg_columns: list[dict[str, Any]] = []
    tg_row_count: int = 0
    tg_record_count: int = 0
    tg_offset_y: float = 0.0
    tg_total_height: float = 0.0
    tg_loading: bool = False
    tg_loaded: bool = False
    tg_has_more: bool = False
    tg_stats: str = ""
    tg_filter_model: dict[str, Any] = {"items": []}
    tg_sort_model: list[dict[str, Any]] = []
    tg_grouping: list[str] = []
    tg_global_filter: str = ""
    tg_hierarchy: bool = True

    # -- Backend-only vars (not sent to frontend) --
    _tg_cache_id: str = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_records(
        self,
        records: Sequence[Record],
        schema: Schema,
        *,
        hierarchy: bool = True,
        viewport_height: float = _DEFAULT_VIEWPORT_HEIGHT,
        row_height: float = _DEFAULT_ROW_HEIGHT,
    ):
        """Load an in-memory record set.

        This is a **generator** -- use ``yield from self.set_records(...)``
        so the loading state reaches the frontend first.
        """
        self.tg_loading = True  # type: ignore[assignment]
        self.tg_stats = "Preparing records..."  # type: ignore[assignment]
        yield

        cache = self._init_cache(schema, hierarchy, viewport_height, row_height)
        cache.records = list(records)
        self.tg_loaded = True  # type: ignore[assignment]
        self.tg_has_more = False  # type: ignore[assignment]
        self._refresh_tg_view()
        self.tg_loading = False  # type: ignore[assignment]

    async def set_stream(
        self,
        fetch: Fetch,
        schema: Schema,
        *,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        hierarchy: bool = True,
        viewport_height: float = _DEFAULT_VIEWPORT_HEIGHT,
        row_height: float = _DEFAULT_ROW_HEIGHT,
    ):
        """Start a streaming session and load its first batch.

        Further batches are loaded by :meth:`handle_tg_scroll_end`.
        """
        self.tg_loading = True  # type: ignore[assignment]
        self.tg_stats = "Loading first batch..."  # type: ignore[assignment]
        yield

        cache = self._init_cache(schema, hierarchy, viewport_height, row_height)
        provider = StreamingProvider(fetch, batch_size=batch_size)
        cache.provider = provider

        def append(batch: Sequence[Record]) -> None:
            cache.records = cache.records + list(batch)

        provider.subscribe(append)
        try:
            await provider.load_more()
        finally:
            self.tg_loading = False  # type: ignore[assignment]
        self.tg_loaded = True  # type: ignore[assignment]
        self._refresh_tg_view()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def handle_tg_sort(self, sort_model: list[dict[str, Any]]) -> None:
        """Replace the sort keys from a ``[{"field", "sort"}]`` model."""
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.with_sorting(sort_keys_from_model(sort_model))
        self.tg_sort_model = sort_model  # type: ignore[assignment]
        self._refresh_tg_view()

    def handle_tg_filter(self, filter_model: dict[str, Any]) -> None:
        """Merge one incoming filter item into the active field filters."""
        cache = self._tg_cache()
        if cache is None:
            return
        cache.filter_model = merge_filter_model(cache.filter_model, filter_model)
        cache.state = cache.state.with_filters(filters_from_model(cache.filter_model))
        self.tg_filter_model = filter_model  # type: ignore[assignment]
        self._refresh_tg_view()

    def handle_tg_global_filter(self, text: str) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.with_global_filter(text).with_scroll(0)
        self.tg_global_filter = text  # type: ignore[assignment]
        self._refresh_tg_view()

    def clear_tg_filters(self) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.filter_model = {}
        cache.state = cache.state.clear_filters()
        self.tg_filter_model = {"items": []}  # type: ignore[assignment]
        self.tg_global_filter = ""  # type: ignore[assignment]
        self._refresh_tg_view()

    def toggle_tg_node(self, node_id: Any) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.toggle_expanded(node_id)
        self._refresh_tg_view()

    def expand_all_tg(self) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        state = cache.state
        if state.hierarchy:
            state = state.expand_all(cache.pipeline.expand_all_ids(cache.records))
        view = cache.pipeline.derive(cache.records, cache.schema, state)
        cache.state = state.expand_all_groups(group_ids(view))
        self._refresh_tg_view()

    def collapse_all_tg(self) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.collapse_all().collapse_all_groups()
        self._refresh_tg_view()

    def toggle_tg_hierarchy(self) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.with_hierarchy(not cache.state.hierarchy)
        self.tg_hierarchy = cache.state.hierarchy  # type: ignore[assignment]
        self._refresh_tg_view()

    def add_tg_group(self, field_id: str) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.add_group(field_id)
        self.tg_grouping = list(cache.state.grouping)  # type: ignore[assignment]
        self._refresh_tg_view()

    def remove_tg_group(self, field_id: str) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.remove_group(field_id)
        self.tg_grouping = list(cache.state.grouping)  # type: ignore[assignment]
        self._refresh_tg_view()

    def toggle_tg_group(self, group_id: str) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        cache.state = cache.state.toggle_group(group_id)
        self._refresh_tg_view()

    def toggle_tg_column(self, field_id: str) -> None:
        cache = self._tg_cache()
        if cache is None:
            return
        column = next((c for c in cache.columns if c.field == field_id), None)
        default = not column.hide if column is not None else True
        cache.state = cache.state.toggle_column_visibility(field_id, default)
        self._refresh_tg_view()

    def handle_tg_scroll(self, params: dict[str, Any]) -> None:
        """Re-window on scroll; *params* carries ``scrollTop`` and ``clientHeight``."""
        cache = self._tg_cache()
        if cache is None:
            return
        offset = float(params.get("scrollTop", 0) or 0)
        height = params.get("clientHeight")
        cache.state = cache.state.with_scroll(offset, float(height) if height else None)
        self._refresh_tg_view()

    async def handle_tg_scroll_end(self, _params: dict[str, Any]):
        """Load the next batch when the scroller nears the bottom of the buffer."""
        cache = self._tg_cache()
        if cache is None or cache.provider is None:
            return
        provider = cache.provider
        if provider.is_loading or not provider.has_more:
            return

        self.tg_loading = True  # type: ignore[assignment]
        self.tg_stats = f"Loading rows {len(provider):,}..."  # type: ignore[assignment]
        yield

        t0 = time.perf_counter()
        try:
            await provider.load_more()
        finally:
            self.tg_loading = False  # type: ignore[assignment]
        self._refresh_tg_view()
        print(
            f"[TreeGrid] scroll-end batch: buffer={len(provider)}, "
            f"status={provider.status.value}, "
            f"elapsed={(time.perf_counter() - t0) * 1000:.1f}ms"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tg_cache(self) -> _TreeGridCache | None:
        if not self._tg_cache_id:
            return None
        return _get_cache(self._tg_cache_id)

    def _init_cache(
        self,
        schema: Schema,
        hierarchy: bool,
        viewport_height: float,
        row_height: float,
    ) -> _TreeGridCache:
        cache_id = type(self).__name__
        self._tg_cache_id = cache_id  # type: ignore[assignment]
        cache = _get_cache(cache_id)
        cache.records = []
        cache.schema = schema
        cache.pipeline = GridPipeline()
        cache.provider = None
        cache.filter_model = {}
        cache.state = GridState(
            hierarchy=hierarchy,
            viewport=ViewportState(viewport_height=viewport_height, row_height=row_height),
        )
        cache.columns = build_column_defs(schema)
        self.tg_filter_model = {"items": []}  # type: ignore[assignment]
        self.tg_sort_model = []  # type: ignore[assignment]
        self.tg_grouping = []  # type: ignore[assignment]
        self.tg_global_filter = ""  # type: ignore[assignment]
        self.tg_hierarchy = hierarchy  # type: ignore[assignment]
        return cache

    def _refresh_tg_view(self) -> None:
        """Derive the view and push the visible window to the frontend."""
        cache = self._tg_cache()
        if cache is None:
            return

        t0 = time.perf_counter()
        view = cache.pipeline.derive(cache.records, cache.schema, cache.state)
        window = view.window
        self.tg_rows = rows_to_dicts(  # type: ignore[assignment]
            view.visible_rows(), window.start_index, cache.schema
        )
        self.tg_columns = [  # type: ignore[assignment]
            c.dict() for c in apply_column_state(cache.columns, cache.state)
        ]
        self.tg_row_count = len(view.display_rows)  # type: ignore[assignment]
        self.tg_record_count = len(cache.records)  # type: ignore[assignment]
        self.tg_offset_y = window.offset_y  # type: ignore[assignment]
        self.tg_total_height = window.total_height  # type: ignore[assignment]
        if cache.provider is not None:
            self.tg_has_more = cache.provider.has_more  # type: ignore[assignment]

        elapsed_ms = (time.perf_counter() - t0) * 1000
        self.tg_stats = (  # type: ignore[assignment]
            f"rows {window.start_index:,}-{window.end_index:,} of {self.tg_row_count:,}  "
            f"records={self.tg_record_count:,}  {elapsed_ms:.0f}ms"
        )
        print(
            f"[TreeGrid] refresh: window={window.start_index}..{window.end_index}, "
            f"display={self.tg_row_count}, records={self.tg_record_count}, "
            f"elapsed={elapsed_ms:.1f}ms"
        )


def merge_filter_model(
    existing: dict[str, Any],
    incoming: dict[str, Any],
) -> dict[str, Any]:
    """Merge an incoming MUI filter model into an accumulated filter.

    A grid that sends one filter item at a time still gets
    multi-column filtering: each incoming item is merged into the
    existing set, keyed by ``field``:

    * Incoming item **has a value** (or a valueless operator such as
      ``isEmpty``) → upsert for that field.
    * Incoming item **has no value** and the field already has a
      filter → keep it, taking over a changed operator.
    * Incoming item **has no value** and the field is new → ignore.
    * Incoming items list is **empty** → clear all accumulated filters.

    Returns:
        The merged filter model dict, or ``{}`` if no filters remain.
    """
    incoming_items: list[dict[str, Any]] = incoming.get("items", [])
    if not incoming_items:
        return {}

    by_field: dict[str, dict[str, Any]] = {}
    for item in (existing or {}).get("items", []):
        field = item.get("field")
        if field:
            by_field[field] = item

    for item in incoming_items:
        field = item.get("field")
        if not field:
            continue
        operator = item.get("operator", "")
        if item.get("value") is not None or operator in ("isEmpty", "isNotEmpty"):
            by_field[field] = item
        elif field in by_field and operator and operator != by_field[field].get("operator", ""):
            by_field[field] = {**by_field[field], "operator": operator}

    if not by_field:
        return {}
    return {"items": list(by_field.values())}
