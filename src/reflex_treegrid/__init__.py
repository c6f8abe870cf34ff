"""reflex-treegrid – row derivation for hierarchical, grouped, virtualized grids.

Build a hierarchy from flat records, filter, sort, group and aggregate
it, and window the result for rendering; optionally stream records in
batches and bind the whole pipeline to Reflex state::

    pip install reflex-treegrid
"""

from reflex_treegrid.filtering import FieldFilter, filter_records, filter_tree, filters_from_model
from reflex_treegrid.flatten import FlatRow, expand_all_ids, flatten_records, flatten_tree
from reflex_treegrid.grouping import GroupNode, all_group_ids, flatten_groups, group_rows
from reflex_treegrid.hierarchy import (
    DuplicateRecordIdError,
    Hierarchy,
    HierarchyCycleError,
    HierarchyError,
    TreeNode,
    build_hierarchy,
)
from reflex_treegrid.models import (
    DEFAULT_CORE_FIELDS,
    Aggregation,
    ColumnDef,
    ColumnOverride,
    FieldDefinition,
    FieldType,
    Schema,
    format_value,
    resolve_value,
)
from reflex_treegrid.pipeline import (
    DerivedView,
    GridPipeline,
    GridState,
    PaginationState,
    ViewportState,
    apply_column_state,
    derive,
)
from reflex_treegrid.polars_utils import (
    build_column_defs,
    export_rows_csv,
    infer_schema,
    read_records,
    rows_to_dicts,
    scan_file,
)
from reflex_treegrid.sorting import SortKey, compare_values, sort_keys_from_model, sort_records, sort_rows, sort_tree
from reflex_treegrid.streaming import Batch, SessionStatus, StreamingProvider, lazyframe_source, sequence_source
from reflex_treegrid.tree_grid import TreeGridMixin, merge_filter_model
from reflex_treegrid.viewport import RowHeightIndex, ViewportRange, compute_window
