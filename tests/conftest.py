"""Shared fixtures: a small project-task tree and its schema."""

from datetime import datetime

import pytest

from reflex_treegrid.models import Aggregation, FieldDefinition, FieldType, Schema


def make_task(task_id, parent_id=None, **fields):
    record = {"id": task_id, "parentId": parent_id}
    metadata = fields.pop("metadata", None)
    record.update(fields)
    if metadata is not None:
        record["metadata"] = metadata
    return record


@pytest.fixture
def task_schema():
    return Schema(
        core_fields=(
            FieldDefinition("id", FieldType.TEXT, show_in_panel=False, groupable=False),
            FieldDefinition("parentId", FieldType.TEXT, show_in_panel=False, groupable=False),
            FieldDefinition("title", FieldType.TEXT, label="Title"),
            FieldDefinition("status", FieldType.SELECT, options=("todo", "doing", "done")),
            FieldDefinition("createdAt", FieldType.DATE),
        ),
        extension_fields=(
            FieldDefinition("priority", FieldType.NUMBER),
            FieldDefinition("progress", FieldType.NUMBER, aggregation=Aggregation.AVG),
            FieldDefinition("tags", FieldType.TAGS),
            FieldDefinition("urgent", FieldType.BOOLEAN),
        ),
    )


@pytest.fixture
def task_records():
    """Two small trees: P1 -> (T1, T2 -> T3), P2 -> (T4)."""
    return [
        make_task(
            "P1", None, title="Launch website", status="doing", createdAt=datetime(2024, 1, 5),
            metadata={"priority": 2, "progress": 40, "tags": ["web"], "urgent": True},
        ),
        make_task(
            "T1", "P1", title="Design mockups", status="done", createdAt=datetime(2024, 1, 6),
            metadata={"priority": 3, "progress": 100, "tags": ["design", "web"], "urgent": False},
        ),
        make_task(
            "T2", "P1", title="Write copy", status="todo", createdAt=datetime(2024, 1, 7),
            metadata={"priority": 1, "progress": 0, "tags": ["content"]},
        ),
        make_task(
            "T3", "T2", title="Review copy", status="todo", createdAt=datetime(2024, 1, 8),
            metadata={"priority": None, "progress": 10, "tags": []},
        ),
        make_task(
            "P2", None, title="Quarterly report", status="done", createdAt=datetime(2024, 2, 1),
            metadata={"priority": 5, "progress": 100, "tags": ["finance"], "owner": "Dana"},
        ),
        make_task(
            "T4", "P2", title="Collect numbers", status="done", createdAt=datetime(2024, 2, 2),
            metadata={"priority": 4, "progress": 100, "tags": ["finance"]},
        ),
    ]


@pytest.fixture
def abc_records():
    return [
        {"id": "A", "parentId": None, "title": "Alpha"},
        {"id": "B", "parentId": "A", "title": "Beta"},
        {"id": "C", "parentId": "Z", "title": "Gamma"},
    ]
