"""Schema model, record value resolution, and column definitions for the tree grid."""

import enum
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from reflex.components.props import PropsBase

Record = Mapping[str, Any]

ID_FIELD: str = "id"
PARENT_FIELD: str = "parentId"
METADATA_FIELD: str = "metadata"

# Identifier / internal-linkage fields: hidden by default and never searched.
INTERNAL_FIELD_IDS: frozenset[str] = frozenset({ID_FIELD, PARENT_FIELD, "path"})


class FieldType(str, enum.Enum):
    """Closed set of field types understood by every pipeline stage."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    SELECT = "select"
    MULTISELECT = "multiselect"
    TAGS = "tags"
    JSON = "json"


class Aggregation(str, enum.Enum):
    """Per-field reduction applied to each group."""

    NONE = "none"
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


@dataclass(frozen=True)
class FieldDefinition:
    """Declarative description of one field (column) of the records.

    Attributes:
        id: Field key, unique within a schema.
        type: One of the :class:`FieldType` members.  Plain strings are
            accepted and converted.
        label: Human-readable header.  Derived from *id* when omitted.
        sortable: Whether sort keys on this field are honoured.
        filterable: Whether field filters on this field are honoured.
        groupable: Whether the field may be used as a grouping key.
        aggregation: Reduction computed for this field in every group.
        show_in_panel: Default column visibility.
        options: Allowed values for ``select`` / ``multiselect`` fields.
    """

    id: str
    type: FieldType = FieldType.TEXT
    label: str | None = None
    sortable: bool = True
    filterable: bool = True
    groupable: bool = True
    aggregation: Aggregation = Aggregation.NONE
    show_in_panel: bool = True
    options: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", FieldType(self.type))
        object.__setattr__(self, "aggregation", Aggregation(self.aggregation))
        object.__setattr__(self, "options", tuple(self.options))

    @property
    def header(self) -> str:
        return self.label if self.label else humanize_field_name(self.id)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldDefinition":
        """Build a field from a camelCase dict as produced by the schema editor.

        Options may be plain strings or ``{"label": ..., "value": ...}``
        dicts; only the values are kept.
        """
        options: list[str] = []
        for opt in data.get("options") or []:
            options.append(str(opt.get("value")) if isinstance(opt, Mapping) else str(opt))
        return cls(
            id=data["id"],
            type=data.get("type", FieldType.TEXT),
            label=data.get("label"),
            sortable=data.get("sortable", True),
            filterable=data.get("filterable", True),
            groupable=data.get("groupable", True),
            aggregation=data.get("aggregation", Aggregation.NONE),
            show_in_panel=data.get("showInPanel", data.get("show_in_panel", True)),
            options=tuple(options),
        )


@dataclass(frozen=True)
class Schema:
    """Ordered field definitions for a record collection.

    *core_fields* are read from the record itself, *extension_fields*
    usually live in the record's ``metadata`` mapping.  Lookups do not
    care about the split (see :func:`resolve_value`); it only matters for
    column ordering and for the global search, which scans the textual
    core fields plus the serialised metadata.
    """

    core_fields: tuple[FieldDefinition, ...] = ()
    extension_fields: tuple[FieldDefinition, ...] = ()
    _by_id: dict[str, FieldDefinition] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "core_fields", tuple(self.core_fields))
        object.__setattr__(self, "extension_fields", tuple(self.extension_fields))
        for fdef in self.fields:
            if fdef.id in self._by_id:
                raise ValueError(f"Duplicate field id in schema: {fdef.id!r}")
            self._by_id[fdef.id] = fdef

    @property
    def fields(self) -> tuple[FieldDefinition, ...]:
        return self.core_fields + self.extension_fields

    @property
    def search_fields(self) -> tuple[str, ...]:
        """Core textual fields scanned by the global search."""
        return tuple(
            f.id
            for f in self.core_fields
            if f.type in (FieldType.TEXT, FieldType.SELECT) and f.id not in INTERNAL_FIELD_IDS
        )

    def get(self, field_id: str) -> FieldDefinition | None:
        return self._by_id.get(field_id)

    def __contains__(self, field_id: object) -> bool:
        return field_id in self._by_id

    def field_type(self, field_id: str) -> FieldType:
        """Declared type of *field_id*, ``text`` for undeclared fields."""
        fdef = self._by_id.get(field_id)
        return fdef.type if fdef is not None else FieldType.TEXT

    def aggregations(self) -> dict[str, Aggregation]:
        return {f.id: f.aggregation for f in self.fields if f.aggregation is not Aggregation.NONE}

    @classmethod
    def from_dicts(
        cls,
        core_fields: Sequence[Mapping[str, Any]] = (),
        extension_fields: Sequence[Mapping[str, Any]] = (),
    ) -> "Schema":
        return cls(
            core_fields=tuple(FieldDefinition.from_dict(f) for f in core_fields),
            extension_fields=tuple(FieldDefinition.from_dict(f) for f in extension_fields),
        )


DEFAULT_CORE_FIELDS: tuple[FieldDefinition, ...] = (
    FieldDefinition("id", FieldType.TEXT, label="ID", show_in_panel=False, groupable=False),
    FieldDefinition("title", FieldType.TEXT, label="Title"),
    FieldDefinition("description", FieldType.TEXT, label="Description", sortable=False, show_in_panel=False),
    FieldDefinition("status", FieldType.SELECT, label="Status"),
    FieldDefinition("path", FieldType.TEXT, label="Path", show_in_panel=False, groupable=False),
    FieldDefinition("parentId", FieldType.TEXT, label="Parent ID", show_in_panel=False, groupable=False),
    FieldDefinition("createdAt", FieldType.DATE, label="Created", show_in_panel=False),
    FieldDefinition("updatedAt", FieldType.DATE, label="Updated", show_in_panel=False),
)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def resolve_value(record: Record, field_id: str) -> Any:
    """Return *field_id* from the record, falling back to its metadata mapping."""
    if field_id in record:
        return record[field_id]
    metadata = record.get(METADATA_FIELD)
    if isinstance(metadata, Mapping):
        return metadata.get(field_id)
    return None


def is_number(value: Any) -> bool:
    """True for int/float values that can take part in numeric folds.

    ``bool`` is excluded (it is an ``int`` subclass) and so is NaN.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def is_null(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def humanize_field_name(field_id: str) -> str:
    """Convert a snake_case or camelCase field id to a header.

    Examples:
        ``"first_name"`` -> ``"First Name"``
        ``"createdAt"`` -> ``"Created At"``
    """
    spaced = "".join(f" {c}" if c.isupper() else c for c in field_id.strip("_"))
    return spaced.replace("_", " ").strip().title()


def format_value(value: Any, field_type: FieldType) -> str:
    """Format a cell value for plain-text display."""
    if is_null(value):
        return ""
    if field_type is FieldType.DATE:
        if isinstance(value, (date, datetime)):
            return f"{value:%b} {value.day}, {value.year}"
        return str(value)
    if field_type is FieldType.BOOLEAN:
        return "Yes" if value else "No"
    if field_type in (FieldType.TAGS, FieldType.MULTISELECT):
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)
    if field_type is FieldType.NUMBER:
        return f"{value:,}" if is_number(value) else str(value)
    if field_type in (FieldType.TEXT, FieldType.SELECT, FieldType.JSON):
        return str(value)
    raise ValueError(f"Unsupported field type: {field_type!r}")


# ---------------------------------------------------------------------------
# Column definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnOverride:
    """Per-column settings layered over a field's defaults.

    Any attribute left as ``None`` keeps the field's own value.
    """

    field_id: str
    visible: bool | None = None
    width: int | None = None
    min_width: int | None = None
    max_width: int | None = None
    sortable: bool | None = None
    filterable: bool | None = None
    resizable: bool | None = None
    aggregation: Aggregation | None = None
    order: int | None = None


class ColumnDef(PropsBase):
    """Column descriptor handed to the renderer.

    Attributes are automatically converted from snake_case to camelCase
    when serialized to JavaScript props via PropsBase.
    """

    field: str
    header_name: str | None = None
    width: int | None = None
    min_width: int | None = None
    max_width: int | None = None
    type: Literal["string", "number", "date", "dateTime", "boolean", "singleSelect"] | None = None
    sortable: bool = True
    filterable: bool = True
    groupable: bool = True
    resizable: bool = True
    hide: bool = False
    aggregation: str = "none"
    description: str | None = None
    value_options: list[str] | None = None
