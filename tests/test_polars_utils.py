import csv
from datetime import date, datetime

import polars as pl
import pytest

from reflex_treegrid.flatten import FlatRow
from reflex_treegrid.grouping import group_rows
from reflex_treegrid.models import (
    DEFAULT_CORE_FIELDS,
    Aggregation,
    ColumnOverride,
    FieldDefinition,
    FieldType,
    Schema,
    format_value,
    resolve_value,
)
from reflex_treegrid.polars_utils import (
    ROW_INDEX_COLUMN,
    build_column_defs,
    coerce_value,
    export_rows_csv,
    field_type_to_dtype,
    infer_schema,
    read_records,
    records_to_frame,
    rows_to_dicts,
    scan_file,
)


class TestSchemaModel:
    def test_duplicate_field_ids_rejected(self):
        with pytest.raises(ValueError):
            Schema(core_fields=(FieldDefinition("a"),), extension_fields=(FieldDefinition("a"),))

    def test_unknown_field_type_rejected(self):
        with pytest.raises(ValueError):
            FieldDefinition("a", type="currency")

    def test_from_dicts(self):
        schema = Schema.from_dicts(
            [{"id": "title", "type": "text", "label": "Title"}],
            [
                {
                    "id": "stage",
                    "type": "select",
                    "showInPanel": False,
                    "options": [{"label": "Open", "value": "open"}, "closed"],
                }
            ],
        )
        stage = schema.get("stage")
        assert stage.type is FieldType.SELECT
        assert not stage.show_in_panel
        assert stage.options == ("open", "closed")
        assert schema.search_fields == ("title",)

    def test_default_core_fields(self):
        schema = Schema(core_fields=DEFAULT_CORE_FIELDS)
        assert schema.search_fields == ("title", "description", "status")
        assert schema.field_type("createdAt") is FieldType.DATE
        assert schema.field_type("undeclared") is FieldType.TEXT

    def test_resolve_value(self):
        record = {"id": 1, "title": "x", "metadata": {"title": "shadowed", "score": 3}}
        assert resolve_value(record, "title") == "x"
        assert resolve_value(record, "score") == 3
        assert resolve_value(record, "missing") is None
        assert resolve_value({"metadata": None}, "score") is None

    def test_format_value(self):
        assert format_value(date(2024, 3, 9), FieldType.DATE) == "Mar 9, 2024"
        assert format_value(False, FieldType.BOOLEAN) == "No"
        assert format_value(["a", "b"], FieldType.TAGS) == "a, b"
        assert format_value(1234, FieldType.NUMBER) == "1,234"
        assert format_value(None, FieldType.TEXT) == ""


class TestFrames:
    def test_dtypes_cover_every_field_type(self):
        for field_type in FieldType:
            assert field_type_to_dtype(field_type) is not None

    def test_coerce_value(self):
        assert coerce_value(3, FieldType.NUMBER) == 3.0
        assert coerce_value("3", FieldType.NUMBER) is None
        assert coerce_value(float("nan"), FieldType.NUMBER) is None
        assert coerce_value("2024-01-02T03:00:00Z", FieldType.DATE) == datetime(2024, 1, 2, 3)
        assert coerce_value("soon", FieldType.DATE) is None
        assert coerce_value("solo", FieldType.TAGS) == ["solo"]
        assert coerce_value({"a": 1}, FieldType.JSON) == '{"a":1}'
        assert coerce_value(7, FieldType.TEXT) == "7"

    def test_records_to_frame(self, task_records, task_schema):
        frame = records_to_frame(task_records, task_schema, ["title", "priority", "tags", "createdAt"])

        assert frame.columns == [ROW_INDEX_COLUMN, "title", "priority", "tags", "createdAt"]
        assert frame.schema["priority"] == pl.Float64
        assert frame.schema["tags"] == pl.List(pl.String)
        assert frame.get_column("priority").to_list()[:4] == [2.0, 3.0, 1.0, None]

    def test_infer_schema(self):
        schema = infer_schema(
            pl.Schema({"id": pl.Int64, "parentId": pl.Int64, "name": pl.String, "score": pl.Float64,
                       "ok": pl.Boolean, "when": pl.Date, "labels": pl.List(pl.String)}),
            aggregations={"score": "sum"},
        )
        assert [f.type for f in schema.fields] == [
            FieldType.NUMBER, FieldType.NUMBER, FieldType.TEXT, FieldType.NUMBER,
            FieldType.BOOLEAN, FieldType.DATE, FieldType.TAGS,
        ]
        assert not schema.get("id").show_in_panel
        assert schema.get("score").aggregation is Aggregation.SUM
        assert schema.get("name").header == "Name"


class TestColumnDefs:
    def test_defaults(self, task_schema):
        columns = build_column_defs(task_schema)
        fields = [c.field for c in columns]

        assert fields[-2:] == ["id", "parentId"]
        by_field = {c.field: c for c in columns}
        assert by_field["id"].hide and by_field["parentId"].hide
        assert not by_field["title"].hide
        assert by_field["status"].type == "singleSelect"
        assert by_field["status"].value_options == ["todo", "doing", "done"]
        assert by_field["progress"].aggregation == "avg"
        assert by_field["createdAt"].type == "dateTime"

    def test_show_in_panel_drives_visibility(self):
        schema = Schema(core_fields=(FieldDefinition("notes", show_in_panel=False),))
        assert build_column_defs(schema)[0].hide

    def test_overrides_win(self, task_schema):
        overrides = [
            ColumnOverride("id", visible=True, order=-1),
            ColumnOverride("title", width=300, sortable=False, aggregation=Aggregation.COUNT),
            ColumnOverride("tags", visible=False),
        ]
        columns = build_column_defs(task_schema, overrides)
        by_field = {c.field: c for c in columns}

        assert columns[0].field == "id"
        assert not by_field["id"].hide
        assert by_field["title"].width == 300
        assert not by_field["title"].sortable
        assert by_field["title"].aggregation == "count"
        assert by_field["tags"].hide


class TestRowsToDicts:
    def test_record_rows(self, task_records, task_schema):
        rows = [FlatRow(task_records[0], depth=0, is_expanded=True, has_children=True)]
        (row,) = rows_to_dicts(rows, start=10, schema=task_schema)

        assert row["__row_id__"] == 10
        assert row["__expanded__"] and row["__has_children__"]
        assert row["createdAt"] == "2024-01-05T00:00:00"
        assert row["priority"] == 2

    def test_group_rows(self):
        schema = Schema(core_fields=(FieldDefinition("s"), FieldDefinition("v", FieldType.NUMBER, aggregation="sum")))
        groups = group_rows([FlatRow({"s": "a", "v": 2})], ["s"], schema)
        (row,) = rows_to_dicts(groups)

        assert row["__group__"] and row["__group_id__"] == "s=a"
        assert row["__row_count__"] == 1
        assert row["__aggregates__"] == {"v": 2.0}

    def test_unsupported_row(self):
        with pytest.raises(ValueError):
            rows_to_dicts([{"id": 1}])


class TestFileIO:
    def test_scan_file_formats(self, tmp_path):
        df = pl.DataFrame({"id": [1, 2], "name": ["a", "b"]})
        df.write_csv(tmp_path / "d.csv")
        df.write_parquet(tmp_path / "d.parquet")
        df.write_ndjson(tmp_path / "d.ndjson")
        (tmp_path / "d.tsv").write_text("id\tname\n1\ta\n2\tb\n")

        for name in ("d.csv", "d.parquet", "d.ndjson", "d.tsv"):
            assert scan_file(tmp_path / name).collect().get_column("name").to_list() == ["a", "b"]

    def test_scan_file_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            scan_file(tmp_path / "missing.csv")
        (tmp_path / "d.xyz").write_text("")
        with pytest.raises(ValueError):
            scan_file(tmp_path / "d.xyz")

    def test_read_records(self, tmp_path):
        pl.DataFrame({"id": [1, 2], "parentId": [None, 1]}).write_parquet(tmp_path / "t.parquet")
        records, schema = read_records(tmp_path / "t.parquet")
        assert records == [{"id": 1, "parentId": None}, {"id": 2, "parentId": 1}]
        assert schema.field_type("id") is FieldType.NUMBER

    def test_export_rows_csv(self, tmp_path, task_records, task_schema):
        rows = [FlatRow(r) for r in task_records[:2]]
        out = tmp_path / "out.csv"
        written = export_rows_csv(rows, build_column_defs(task_schema), task_schema, out)

        assert written == 2
        with out.open() as fh:
            data = list(csv.DictReader(fh))
        assert list(data[0]) == ["title", "status", "createdAt", "priority", "progress", "tags", "urgent"]
        assert data[1]["tags"] == "design, web"
        assert data[0]["createdAt"] == "2024-01-05T00:00:00"
