import json

import polars as pl
import pytest
from typer.testing import CliRunner

from reflex_treegrid.cli import _parse_filter, _parse_sort, app
from reflex_treegrid.filtering import FieldFilter
from reflex_treegrid.sorting import SortKey

runner = CliRunner()


@pytest.fixture
def tasks_file(tmp_path):
    path = tmp_path / "tasks.parquet"
    pl.DataFrame(
        {
            "id": ["A", "B", "C", "D"],
            "parentId": [None, "A", "A", None],
            "title": ["Alpha", "Beta", "Gamma", "Delta"],
            "status": ["done", "done", "todo", "todo"],
            "progress": [100, 50, 0, 20],
        }
    ).write_parquet(path)
    return path


def _derive(*args):
    result = runner.invoke(app, ["derive", *map(str, args)])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_parse_helpers():
    assert _parse_sort(["a:desc", "b"]) == (SortKey("a", "desc"), SortKey("b", "asc"))
    assert _parse_filter("n:>:3") == FieldFilter("n", ">", 3)
    assert _parse_filter("t:contains:a:b") == FieldFilter("t", "contains", "a:b")
    assert _parse_filter('s:isAnyOf:["x"]') == FieldFilter("s", "isAnyOf", ["x"])
    with pytest.raises(ValueError):
        _parse_filter("nofield")


def test_derive_collapsed_tree(tasks_file):
    payload = _derive(tasks_file)
    assert payload["rowCount"] == 2
    assert [r["id"] for r in payload["rows"]] == ["A", "D"]
    assert payload["rows"][0]["__has_children__"]


def test_derive_expand_all_sorted(tasks_file):
    payload = _derive(tasks_file, "--expand-all", "--sort", "title:desc")
    assert [r["id"] for r in payload["rows"]] == ["D", "A", "C", "B"]
    assert [r["__depth__"] for r in payload["rows"]] == [0, 0, 1, 1]


def test_derive_search_keeps_ancestors(tasks_file):
    payload = _derive(tasks_file, "--expand-all", "--search", "gam")
    assert [r["id"] for r in payload["rows"]] == ["A", "C"]


def test_derive_groups(tasks_file):
    payload = _derive(tasks_file, "--flat", "--group-by", "status", "--aggregate", "progress:avg")
    groups = {r["__key__"]: r for r in payload["rows"]}
    assert groups["done"]["__aggregates__"] == {"progress": 75.0}
    assert groups["todo"]["__aggregates__"] == {"progress": 10.0}


def test_derive_window(tasks_file):
    payload = _derive(
        tasks_file, "--flat", "--row-height", 10, "--height", 20, "--offset", 20, "--overscan", 0
    )
    assert payload["window"] == {"startIndex": 2, "endIndex": 3, "offsetY": 20.0, "totalHeight": 40.0}
    assert [r["__row_id__"] for r in payload["rows"]] == [2, 3]


def test_derive_errors(tmp_path, tasks_file):
    result = runner.invoke(app, ["derive", str(tmp_path / "missing.csv")])
    assert result.exit_code == 1

    result = runner.invoke(app, ["derive", str(tasks_file), "--sort", "title:sideways"])
    assert result.exit_code == 1

    flat_file = tmp_path / "flat.csv"
    pl.DataFrame({"name": ["x"]}).write_csv(flat_file)
    result = runner.invoke(app, ["derive", str(flat_file)])
    assert result.exit_code == 1
    assert runner.invoke(app, ["derive", str(flat_file), "--flat"]).exit_code == 0


def test_columns(tasks_file):
    result = runner.invoke(app, ["columns", str(tasks_file)])
    assert result.exit_code == 0, result.output
    columns = json.loads(result.output)
    assert [c["field"] for c in columns] == ["title", "status", "progress", "id", "parentId"]
    assert columns[-1]["hide"]


def test_export(tmp_path, tasks_file):
    out = tmp_path / "out.csv"
    result = runner.invoke(
        app, ["export", str(tasks_file), str(out), "--flat", "--filter", "status:contains:todo"]
    )
    assert result.exit_code == 0, result.output
    exported = pl.read_csv(out)
    assert exported.get_column("title").to_list() == ["Gamma", "Delta"]
