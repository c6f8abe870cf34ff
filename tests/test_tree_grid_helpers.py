"""Tests for the module-level helpers behind ``TreeGridMixin``."""

import pytest

from reflex_treegrid.filtering import FieldFilter, filters_from_model
from reflex_treegrid.streaming import SessionStatus, sequence_source
from reflex_treegrid.tree_grid import TreeGridMixin, _get_cache, merge_filter_model


class TestMergeFilterModel:
    def test_upsert_by_field(self):
        merged = merge_filter_model(
            {"items": [{"field": "a", "operator": "contains", "value": "x"}]},
            {"items": [{"field": "b", "operator": ">", "value": 3}]},
        )
        assert [i["field"] for i in merged["items"]] == ["a", "b"]

        merged = merge_filter_model(merged, {"items": [{"field": "a", "operator": "equals", "value": "y"}]})
        assert merged["items"][0] == {"field": "a", "operator": "equals", "value": "y"}

    def test_valueless_item_keeps_existing_filter(self):
        existing = {"items": [{"field": "a", "operator": "contains", "value": "x"}]}
        merged = merge_filter_model(existing, {"items": [{"field": "a", "operator": "contains"}]})
        assert merged == existing

    def test_operator_change_is_taken_over(self):
        existing = {"items": [{"field": "n", "operator": "=", "value": 3}]}
        merged = merge_filter_model(existing, {"items": [{"field": "n", "operator": ">", "value": None}]})
        assert merged["items"] == [{"field": "n", "operator": ">", "value": 3}]

    def test_valueless_operator_is_upserted(self):
        merged = merge_filter_model({}, {"items": [{"field": "t", "operator": "isEmpty"}]})
        assert filters_from_model(merged) == {"t": FieldFilter("t", "isEmpty")}

    def test_new_field_without_value_is_ignored(self):
        assert merge_filter_model({}, {"items": [{"field": "a", "operator": "contains"}]}) == {}

    def test_empty_items_clear_everything(self):
        existing = {"items": [{"field": "a", "operator": "contains", "value": "x"}]}
        assert merge_filter_model(existing, {"items": []}) == {}


def test_cache_registry_returns_same_entry():
    first = _get_cache("TestGridState")
    assert _get_cache("TestGridState") is first
    assert _get_cache("OtherGridState") is not first


class _GridHost:
    """Plain object running the mixin's handlers against the module cache."""

    _tg_cache = TreeGridMixin._tg_cache
    _init_cache = TreeGridMixin._init_cache
    _refresh_tg_view = TreeGridMixin._refresh_tg_view
    set_records = TreeGridMixin.set_records
    set_stream = TreeGridMixin.set_stream
    toggle_tg_node = TreeGridMixin.toggle_tg_node
    expand_all_tg = TreeGridMixin.expand_all_tg
    collapse_all_tg = TreeGridMixin.collapse_all_tg
    add_tg_group = TreeGridMixin.add_tg_group
    handle_tg_global_filter = TreeGridMixin.handle_tg_global_filter
    handle_tg_scroll_end = TreeGridMixin.handle_tg_scroll_end

    def __init__(self):
        self._tg_cache_id = ""
        self.tg_loading = False
        self.tg_loaded = False
        self.tg_has_more = False


def _row_ids(host):
    return [row["id"] for row in host.tg_rows]


class TestTreeGridHandlers:
    def test_refresh_without_records_is_a_no_op(self):
        host = _GridHost()
        host._refresh_tg_view()
        assert not hasattr(host, "tg_rows")

    def test_set_records_publishes_window(self, task_records, task_schema):
        host = _GridHost()
        for _ in host.set_records(task_records, task_schema, row_height=10, viewport_height=100):
            assert host.tg_loading

        assert not host.tg_loading and host.tg_loaded
        assert _row_ids(host) == ["P1", "P2"]
        assert host.tg_rows[0]["__has_children__"]
        assert host.tg_row_count == 2
        assert host.tg_record_count == 6
        assert host.tg_total_height == 20
        assert "id" in {c["field"] for c in host.tg_columns}

    def test_expansion_handlers(self, task_records, task_schema):
        host = _GridHost()
        for _ in host.set_records(task_records, task_schema):
            pass

        host.toggle_tg_node("P1")
        assert _row_ids(host) == ["P1", "T1", "T2", "P2"]
        host.expand_all_tg()
        assert host.tg_row_count == 6
        host.collapse_all_tg()
        assert _row_ids(host) == ["P1", "P2"]

        host.handle_tg_global_filter("review")
        host.expand_all_tg()
        assert _row_ids(host) == ["P1", "T2", "T3"]

    def test_expand_all_opens_groups(self, task_records, task_schema):
        host = _GridHost()
        for _ in host.set_records(task_records, task_schema, hierarchy=False):
            pass

        host.add_tg_group("status")
        assert host.tg_grouping == ["status"]
        assert host.tg_row_count == 3
        host.expand_all_tg()
        assert host.tg_row_count == 3 + 6

    @pytest.mark.asyncio
    async def test_stream_loads_more_on_scroll_end(self, task_schema):
        host = _GridHost()
        records = [{"id": i, "title": f"Task {i}"} for i in range(5)]
        async for _ in host.set_stream(sequence_source(records), task_schema, batch_size=2, hierarchy=False):
            pass
        assert host.tg_record_count == 2 and host.tg_has_more

        async for _ in host.handle_tg_scroll_end({}):
            assert host.tg_loading
        assert not host.tg_loading
        assert host.tg_record_count == 4

        async for _ in host.handle_tg_scroll_end({}):
            pass
        assert host.tg_record_count == 5 and not host.tg_has_more

    @pytest.mark.asyncio
    async def test_failed_first_batch_clears_loading(self, task_schema):
        async def fetch(cursor, size):
            raise RuntimeError("backend down")

        host = _GridHost()
        with pytest.raises(RuntimeError, match="backend down"):
            async for _ in host.set_stream(fetch, task_schema):
                pass
        assert not host.tg_loading
        assert host._tg_cache().provider.status is SessionStatus.IDLE
