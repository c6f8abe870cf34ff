"""Polars helpers: typed frames from records, schema inference, columns, I/O."""

import json
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any

import polars as pl

from reflex_treegrid.flatten import FlatRow
from reflex_treegrid.models import (
    INTERNAL_FIELD_IDS,
    METADATA_FIELD,
    Aggregation,
    ColumnDef,
    ColumnOverride,
    FieldDefinition,
    FieldType,
    Record,
    Schema,
    humanize_field_name,
    is_number,
    resolve_value,
)

ROW_INDEX_COLUMN: str = "__row__"


# ---------------------------------------------------------------------------
# Field types <-> polars / grid types
# ---------------------------------------------------------------------------

def field_type_to_dtype(field_type: FieldType) -> pl.DataType:
    """Polars dtype used to hold values of *field_type*."""
    if field_type is FieldType.NUMBER:
        return pl.Float64()
    if field_type is FieldType.BOOLEAN:
        return pl.Boolean()
    if field_type is FieldType.DATE:
        return pl.Datetime("us")
    if field_type in (FieldType.MULTISELECT, FieldType.TAGS):
        return pl.List(pl.String)
    if field_type in (FieldType.TEXT, FieldType.SELECT, FieldType.JSON):
        return pl.String()
    raise ValueError(f"Unsupported field type: {field_type!r}")


def grid_type_for_field(field_type: FieldType) -> str:
    """Map a field type to the closest grid column type."""
    if field_type is FieldType.NUMBER:
        return "number"
    if field_type is FieldType.BOOLEAN:
        return "boolean"
    if field_type is FieldType.DATE:
        return "dateTime"
    if field_type is FieldType.SELECT:
        return "singleSelect"
    if field_type in (FieldType.TEXT, FieldType.MULTISELECT, FieldType.TAGS, FieldType.JSON):
        return "string"
    raise ValueError(f"Unsupported field type: {field_type!r}")


def polars_dtype_to_field_type(dtype: pl.DataType) -> FieldType:
    """Map a polars DataType to the closest field type.

    Uses polars' built-in type-checking helpers for robustness across
    polars versions.
    """
    if isinstance(dtype, pl.Boolean):
        return FieldType.BOOLEAN
    if dtype.is_numeric():
        return FieldType.NUMBER
    if isinstance(dtype, (pl.Date, pl.Datetime)):
        return FieldType.DATE
    if isinstance(dtype, (pl.Categorical, pl.Enum)):
        return FieldType.SELECT
    if isinstance(dtype, pl.List):
        return FieldType.TAGS
    if isinstance(dtype, pl.Struct):
        return FieldType.JSON
    # Everything else (String, Duration, Binary, ...)
    return FieldType.TEXT


def infer_schema(
    pl_schema: pl.Schema | Mapping[str, pl.DataType],
    *,
    aggregations: Mapping[str, Aggregation | str] | None = None,
) -> Schema:
    """Build a :class:`Schema` from a polars schema without collecting data.

    Every column becomes a core field.  Internal linkage columns (``id``,
    ``parentId``, ``path``) are hidden and not groupable; a ``metadata``
    struct column is skipped since its keys are resolved per record.

    Args:
        pl_schema: A polars ``Schema`` (e.g. ``lf.collect_schema()``).
        aggregations: Optional ``{field: aggregation}`` mapping.

    Returns:
        A schema with one field per column, in column order.
    """
    aggregations = aggregations or {}
    fields: list[FieldDefinition] = []
    for col_name, dtype in pl_schema.items():
        if col_name == METADATA_FIELD:
            continue
        internal = col_name in INTERNAL_FIELD_IDS
        fields.append(
            FieldDefinition(
                id=col_name,
                type=polars_dtype_to_field_type(dtype),
                label=humanize_field_name(col_name),
                groupable=not internal,
                show_in_panel=not internal,
                aggregation=aggregations.get(col_name, Aggregation.NONE),
            )
        )
    return Schema(core_fields=tuple(fields))


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def _coerce_numeric(value: Any) -> int | float | None:
    """Try to coerce *value* to a number."""
    if is_number(value):
        return value
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        # Try int first, then float
        for conv in (int, float):
            try:
                return conv(value)
            except ValueError:
                continue
    return None


def _coerce_datetime(value: Any) -> datetime | None:
    """Normalise dates, datetimes and ISO-8601 strings to a naive UTC instant."""
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    return None


def _coerce_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _to_json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str, ensure_ascii=False)


def coerce_value(value: Any, field_type: FieldType) -> Any:
    """Convert a raw record value into the Python value stored for *field_type*.

    Values that do not fit the type become ``None``; so do NaN numbers.
    """
    if value is None:
        return None
    if field_type is FieldType.NUMBER:
        return float(value) if is_number(value) else None
    if field_type is FieldType.BOOLEAN:
        return value if isinstance(value, bool) else None
    if field_type is FieldType.DATE:
        return _coerce_datetime(value)
    if field_type in (FieldType.MULTISELECT, FieldType.TAGS):
        return _coerce_list(value)
    if field_type is FieldType.JSON:
        return value if isinstance(value, str) else _to_json_text(value)
    if field_type in (FieldType.TEXT, FieldType.SELECT):
        return value if isinstance(value, str) else str(value)
    raise ValueError(f"Unsupported field type: {field_type!r}")


def records_to_frame(
    records: Sequence[Record],
    schema: Schema,
    field_ids: Iterable[str],
) -> pl.DataFrame:
    """Build a typed DataFrame of the requested fields.

    Values are looked up with :func:`resolve_value` and coerced per the
    field's declared type.  A ``__row__`` column holds each record's
    position in *records* so results can be mapped back.
    """
    columns: list[pl.Series] = [
        pl.Series(ROW_INDEX_COLUMN, range(len(records)), dtype=pl.UInt32)
    ]
    for field_id in dict.fromkeys(field_ids):
        field_type = schema.field_type(field_id)
        values = [coerce_value(resolve_value(r, field_id), field_type) for r in records]
        columns.append(pl.Series(field_id, values, dtype=field_type_to_dtype(field_type)))
    return pl.DataFrame(columns)


def numeric_series(name: str, values: Iterable[Any]) -> pl.Series:
    """Float column holding only the numeric values (``None`` elsewhere)."""
    return pl.Series(name, [float(v) if is_number(v) else None for v in values], dtype=pl.Float64)


# ---------------------------------------------------------------------------
# Column definitions
# ---------------------------------------------------------------------------

def build_column_defs(
    schema: Schema,
    overrides: Mapping[str, ColumnOverride] | Iterable[ColumnOverride] | None = None,
) -> list[ColumnDef]:
    """Derive ordered :class:`ColumnDef` descriptors from *schema*.

    Default visibility mirrors each field's ``show_in_panel``.  The
    internal ``id`` / ``parentId`` / ``path`` fields are hidden and placed
    after every other column.  Any non-``None`` attribute of a matching
    :class:`ColumnOverride` wins over the field default; an override
    ``order`` moves the column (columns without one keep their natural
    position, ties keep schema order).

    Args:
        schema: Field definitions to derive columns from.
        overrides: ``ColumnOverride`` values, as a sequence or keyed by
            field id.

    Returns:
        A list of :class:`ColumnDef` instances.
    """
    if overrides is None:
        overrides = {}
    elif not isinstance(overrides, Mapping):
        overrides = {o.field_id: o for o in overrides}

    regular = [f for f in schema.fields if f.id not in INTERNAL_FIELD_IDS]
    system = [f for f in schema.fields if f.id in INTERNAL_FIELD_IDS]

    ranked: list[tuple[int, ColumnDef]] = []
    for position, fdef in enumerate(regular + system):
        override = overrides.get(fdef.id)
        visible = fdef.show_in_panel and fdef.id not in INTERNAL_FIELD_IDS
        props: dict[str, Any] = {
            "field": fdef.id,
            "header_name": fdef.header,
            "type": grid_type_for_field(fdef.type),
            "sortable": fdef.sortable,
            "filterable": fdef.filterable,
            "groupable": fdef.groupable,
            "hide": not visible,
            "aggregation": fdef.aggregation.value,
            "value_options": list(fdef.options) or None,
        }
        order = position
        if override is not None:
            if override.visible is not None:
                props["hide"] = not override.visible
            for attr in ("width", "min_width", "max_width", "sortable", "filterable", "resizable"):
                value = getattr(override, attr)
                if value is not None:
                    props[attr] = value
            if override.aggregation is not None:
                props["aggregation"] = Aggregation(override.aggregation).value
            if override.order is not None:
                order = override.order
        ranked.append((order, ColumnDef(**props)))

    ranked.sort(key=lambda pair: pair[0])
    return [col for _, col in ranked]


# ---------------------------------------------------------------------------
# JSON-safe rows
# ---------------------------------------------------------------------------

def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return value


def record_to_dict(record: Record, schema: Schema | None = None) -> dict[str, Any]:
    """JSON-safe copy of *record* with extension fields lifted to the top level."""
    row = {str(k): _json_safe(v) for k, v in record.items()}
    if schema is not None:
        for fdef in schema.extension_fields:
            if fdef.id not in row:
                row[fdef.id] = _json_safe(resolve_value(record, fdef.id))
    return row


def rows_to_dicts(
    display_rows: Sequence[Any],
    start: int = 0,
    schema: Schema | None = None,
) -> list[dict[str, Any]]:
    """Convert a window of display rows into JSON-safe dicts.

    Record rows carry their fields plus ``__row_id__``, ``__depth__``,
    ``__has_children__`` and ``__expanded__``.  Group header rows carry
    ``__group__``, ``__group_id__``, ``__row_count__`` and the group's
    aggregates under ``__aggregates__``.

    Args:
        display_rows: ``FlatRow`` / ``GroupNode`` values, e.g. from
            :meth:`DerivedView.visible_rows`.
        start: Display index of the first row (used for ``__row_id__``).
        schema: When given, extension fields are lifted out of metadata.
    """
    from reflex_treegrid.grouping import GroupNode

    out: list[dict[str, Any]] = []
    for offset, row in enumerate(display_rows):
        if isinstance(row, GroupNode):
            out.append(
                {
                    "__row_id__": start + offset,
                    "__group__": True,
                    "__group_id__": row.id,
                    "__depth__": row.depth,
                    "__field__": row.field_id,
                    "__key__": row.key,
                    "__row_count__": row.row_count,
                    "__aggregates__": _json_safe(dict(row.aggregates)),
                }
            )
            continue
        if not isinstance(row, FlatRow):
            raise ValueError(f"Unsupported display row type: {type(row).__name__}")
        data = record_to_dict(row.record, schema)
        data["__row_id__"] = start + offset
        data["__depth__"] = row.depth
        data["__has_children__"] = row.has_children
        data["__expanded__"] = row.is_expanded
        out.append(data)
    return out


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------

def scan_file(path: Path) -> pl.LazyFrame:
    """Scan a data file lazily, auto-detecting the format from the extension.

    * ``.parquet`` / ``.pq`` -- uses ``pl.scan_parquet()``.
    * ``.csv`` -- uses ``pl.scan_csv()``.
    * ``.tsv`` -- uses ``pl.scan_csv(separator="\\t")``.
    * ``.json`` -- uses ``pl.read_json().lazy()`` (no streaming scan).
    * ``.ndjson`` / ``.jsonl`` -- uses ``pl.scan_ndjson()``.
    * ``.ipc`` / ``.arrow`` / ``.feather`` -- uses ``pl.scan_ipc()``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file extension is not recognised.
    """
    path = Path(path).resolve()
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    suffix = path.suffix.lower()

    if suffix in (".parquet", ".pq"):
        return pl.scan_parquet(path)
    if suffix == ".csv":
        return pl.scan_csv(path)
    if suffix == ".tsv":
        return pl.scan_csv(path, separator="\t")
    # JSON (no streaming scan -- read then convert to lazy)
    if suffix == ".json":
        return pl.read_json(path).lazy()
    if suffix in (".ndjson", ".jsonl"):
        return pl.scan_ndjson(path)
    if suffix in (".ipc", ".arrow", ".feather"):
        return pl.scan_ipc(path)

    raise ValueError(
        f"Unsupported file extension: {suffix!r}. "
        "Supported: .parquet, .pq, .csv, .tsv, .json, .ndjson, .jsonl, "
        ".ipc, .arrow, .feather"
    )


def read_records(path: Path) -> tuple[list[dict[str, Any]], Schema]:
    """Collect a data file into records plus a schema inferred from it."""
    lf = scan_file(path)
    schema = infer_schema(lf.collect_schema())
    return lf.collect().to_dicts(), schema


def export_rows_csv(
    rows: Sequence[FlatRow],
    columns: Sequence[ColumnDef],
    schema: Schema,
    path: Path,
) -> int:
    """Write the visible columns of *rows* to a CSV file.

    List columns are comma-joined and temporal columns written as
    ISO-8601, the same casts used for JSON-safe rows.

    Returns:
        The number of data rows written.
    """
    fields = [c.field for c in columns if not c.hide]
    frame = records_to_frame([r.record for r in rows], schema, fields)
    exprs: list[pl.Expr] = []
    for name in fields:
        dtype = frame.schema[name]
        if isinstance(dtype, pl.List):
            exprs.append(pl.col(name).list.join(", "))
        elif isinstance(dtype, pl.Datetime):
            exprs.append(pl.col(name).dt.to_string("%Y-%m-%dT%H:%M:%S"))
        else:
            exprs.append(pl.col(name))
    frame.select(exprs).write_csv(Path(path))
    return frame.height
