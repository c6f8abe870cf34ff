"""CLI for reflex-treegrid -- derive tree-grid views from data files.

Usage::

    # Window of a hierarchical view, fully expanded, sorted by priority
    reflex-treegrid derive tasks.parquet --expand-all --sort priority:desc

    # Flat view grouped by status with an average per group
    reflex-treegrid derive tasks.csv --flat --group-by status --aggregate progress:avg

    # Column descriptors inferred from the file
    reflex-treegrid columns tasks.csv

    # Filtered, sorted rows as CSV
    reflex-treegrid export tasks.csv out.csv --filter status:isAnyOf:'["todo"]'

Hierarchical views need ``id`` and ``parentId`` columns.
"""

import json
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer

from reflex_treegrid.filtering import FieldFilter
from reflex_treegrid.hierarchy import HierarchyError
from reflex_treegrid.models import ID_FIELD, Schema
from reflex_treegrid.pipeline import (
    _DEFAULT_OVERSCAN,
    _DEFAULT_ROW_HEIGHT,
    _DEFAULT_VIEWPORT_HEIGHT,
    DerivedView,
    GridPipeline,
    GridState,
    PaginationState,
    ViewportState,
    group_ids,
)
from reflex_treegrid.polars_utils import build_column_defs, export_rows_csv, read_records, rows_to_dicts
from reflex_treegrid.sorting import SortKey

app = typer.Typer(
    name="reflex-treegrid",
    help="Derive sorted, filtered, grouped and windowed tree-grid views from data files.",
    no_args_is_help=True,
)


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _parse_sort(specs: list[str]) -> tuple[SortKey, ...]:
    keys: list[SortKey] = []
    for spec in specs:
        field_id, _, direction = spec.partition(":")
        keys.append(SortKey(field_id, direction or "asc"))
    return tuple(keys)


def _parse_filter(spec: str) -> FieldFilter:
    """Parse ``field:operator:value``; the value is JSON when it parses as JSON."""
    parts = spec.split(":", 2)
    if len(parts) < 2 or not parts[0]:
        raise ValueError(f"Invalid filter {spec!r}; expected field:operator[:value]")
    field_id, operator = parts[0], parts[1] or None
    value: Any = None
    if len(parts) == 3:
        try:
            value = json.loads(parts[2])
        except json.JSONDecodeError:
            value = parts[2]
    return FieldFilter(field_id, operator, value)


def _parse_aggregations(specs: list[str]) -> dict[str, str]:
    aggregations: dict[str, str] = {}
    for spec in specs:
        field_id, sep, agg = spec.partition(":")
        if not sep:
            raise ValueError(f"Invalid aggregation {spec!r}; expected field:aggregation")
        aggregations[field_id] = agg
    return aggregations


def _load(file: Path, schema_file: Path | None) -> tuple[list[dict[str, Any]], Schema]:
    records, schema = read_records(file)
    if schema_file is not None:
        raw = json.loads(schema_file.read_text())
        schema = Schema.from_dicts(raw.get("coreFields", []), raw.get("extensionFields", []))
    return records, schema


def _derive(
    file: Path,
    schema_file: Path | None,
    *,
    flat: bool,
    sort: list[str],
    group_by: list[str],
    filters: list[str],
    search: str,
    aggregate: list[str],
    expand_all: bool,
    page: int | None = None,
    page_size: int | None = None,
    viewport: ViewportState = ViewportState(),
) -> tuple[DerivedView, Schema]:
    file = file.resolve()
    if not file.exists():
        _fail(f"file not found: {file}")

    try:
        records, schema = _load(file, schema_file)
        if not flat and ID_FIELD not in schema:
            _fail(f"hierarchical view needs an {ID_FIELD!r} column; use --flat")
        state = GridState(
            sorting=_parse_sort(sort),
            grouping=tuple(group_by),
            filters={f.field_id: f for f in map(_parse_filter, filters)},
            global_filter=search,
            hierarchy=not flat,
            viewport=viewport,
            aggregations=_parse_aggregations(aggregate),
            pagination=PaginationState(page or 0, page_size) if page_size else None,
        )
        pipeline = GridPipeline()
        if expand_all:
            if state.hierarchy:
                state = state.expand_all(pipeline.expand_all_ids(records))
            state = state.expand_all_groups(group_ids(pipeline.derive(records, schema, state)))
        return pipeline.derive(records, schema, state), schema
    except (ValueError, HierarchyError) as exc:
        _fail(str(exc))


@app.command()
def derive(
    file: Annotated[Path, typer.Argument(help="Path to the data file (CSV, TSV, Parquet, JSON, NDJSON, IPC)")],
    schema_file: Annotated[Optional[Path], typer.Option("--schema", help="JSON schema with coreFields / extensionFields")] = None,
    flat: Annotated[bool, typer.Option("--flat", help="Ignore parentId links")] = False,
    sort: Annotated[Optional[list[str]], typer.Option("--sort", "-s", help="field:asc|desc, repeatable")] = None,
    group_by: Annotated[Optional[list[str]], typer.Option("--group-by", "-g", help="Grouping field, repeatable")] = None,
    filters: Annotated[Optional[list[str]], typer.Option("--filter", "-f", help="field:operator:value, repeatable")] = None,
    search: Annotated[str, typer.Option("--search", "-q", help="Global search text")] = "",
    aggregate: Annotated[Optional[list[str]], typer.Option("--aggregate", "-a", help="field:count|sum|avg|min|max")] = None,
    expand_all: Annotated[bool, typer.Option("--expand-all", help="Expand every node and group")] = False,
    offset: Annotated[float, typer.Option("--offset", help="Scroll offset in pixels")] = 0.0,
    height: Annotated[float, typer.Option("--height", help="Viewport height in pixels")] = _DEFAULT_VIEWPORT_HEIGHT,
    row_height: Annotated[float, typer.Option("--row-height", help="Row height in pixels")] = _DEFAULT_ROW_HEIGHT,
    overscan: Annotated[int, typer.Option("--overscan", help="Extra rows above and below")] = _DEFAULT_OVERSCAN,
    page: Annotated[Optional[int], typer.Option("--page", help="Page index (with --page-size)")] = None,
    page_size: Annotated[Optional[int], typer.Option("--page-size", help="Rows per page")] = None,
    all_rows: Annotated[bool, typer.Option("--all-rows", help="Print every display row, not only the window")] = False,
) -> None:
    """Print the derived view as JSON: window metrics and the rows to render."""
    view, schema = _derive(
        file,
        schema_file,
        flat=flat,
        sort=sort or [],
        group_by=group_by or [],
        filters=filters or [],
        search=search,
        aggregate=aggregate or [],
        expand_all=expand_all,
        page=page,
        page_size=page_size,
        viewport=ViewportState(
            scroll_offset=offset, viewport_height=height, row_height=row_height, overscan=overscan
        ),
    )
    window = view.window
    rows = view.display_rows if all_rows else view.visible_rows()
    payload = {
        "rowCount": len(view.display_rows),
        "totalRowCount": view.total_display_rows,
        "window": {
            "startIndex": window.start_index,
            "endIndex": window.end_index,
            "offsetY": window.offset_y,
            "totalHeight": window.total_height,
        },
        "rows": rows_to_dicts(rows, 0 if all_rows else window.start_index, schema),
    }
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command()
def columns(
    file: Annotated[Path, typer.Argument(help="Path to the data file")],
    schema_file: Annotated[Optional[Path], typer.Option("--schema", help="JSON schema with coreFields / extensionFields")] = None,
) -> None:
    """Print the column descriptors derived from the file's schema as JSON."""
    file = file.resolve()
    if not file.exists():
        _fail(f"file not found: {file}")
    try:
        _, schema = _load(file, schema_file)
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(json.dumps([c.dict() for c in build_column_defs(schema)], indent=2))


@app.command()
def export(
    file: Annotated[Path, typer.Argument(help="Path to the data file")],
    out: Annotated[Path, typer.Argument(help="Destination CSV file")],
    schema_file: Annotated[Optional[Path], typer.Option("--schema", help="JSON schema with coreFields / extensionFields")] = None,
    flat: Annotated[bool, typer.Option("--flat", help="Ignore parentId links")] = False,
    sort: Annotated[Optional[list[str]], typer.Option("--sort", "-s", help="field:asc|desc, repeatable")] = None,
    filters: Annotated[Optional[list[str]], typer.Option("--filter", "-f", help="field:operator:value, repeatable")] = None,
    search: Annotated[str, typer.Option("--search", "-q", help="Global search text")] = "",
    expand_all: Annotated[bool, typer.Option("--expand-all", help="Include rows under collapsed nodes")] = False,
) -> None:
    """Write the visible columns of the filtered, sorted rows to CSV."""
    view, schema = _derive(
        file,
        schema_file,
        flat=flat,
        sort=sort or [],
        group_by=[],
        filters=filters or [],
        search=search,
        aggregate=[],
        expand_all=expand_all,
    )
    written = export_rows_csv(view.rows, build_column_defs(schema), schema, out)
    typer.echo(f"Wrote {written} rows to {out}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
