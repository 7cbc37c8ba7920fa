"""
Pydantic models and enums for the Kanban Manager.

Provides the closed status/priority vocabularies, request validation models
for the HTTP API, the typed activity-log payloads, and the standard
success/error response envelopes shared by the API and MCP tools.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError


class TaskStatus(str, Enum):
    """Kanban columns, declared in display order."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"


class TaskPriority(str, Enum):
    """Task priority levels, declared in display order."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ActivityAction(str, Enum):
    """Kinds of activity-log entries written by the service."""

    TASK_CREATED = "task_created"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    TASK_DELETED = "task_deleted"


DEFAULT_LABEL_COLOR = "#6366f1"
LABEL_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$"


def parse_status(value: Union[str, TaskStatus], field: str = "status") -> TaskStatus:
    """Coerce a raw status value, raising ValidationError for unknown values."""
    try:
        return TaskStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Invalid {field} '{value}'. Valid options: {valid}", field=field)


def parse_priority(value: Union[str, TaskPriority], field: str = "priority") -> TaskPriority:
    """Coerce a raw priority value, raising ValidationError for unknown values."""
    try:
        return TaskPriority(value)
    except ValueError:
        valid = ", ".join(p.value for p in TaskPriority)
        raise ValidationError(f"Invalid {field} '{value}'. Valid options: {valid}", field=field)


# Activity payloads
#
# Each action kind has its own payload model. Payloads are serialized to JSON
# text only when written to the activity_log table and parsed back when read.


class TaskCreatedDetails(BaseModel):
    """Payload for task_created entries."""

    title: str


class TaskDeletedDetails(BaseModel):
    """Payload for task_deleted entries."""

    title: str


class FieldChangeDetails(BaseModel):
    """Payload for entries recording a before/after field value."""

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    title: str


class StatusChangedDetails(FieldChangeDetails):
    """Payload for status_changed entries."""


class PriorityChangedDetails(FieldChangeDetails):
    """Payload for priority_changed entries."""


ActivityDetails = Union[
    TaskCreatedDetails, StatusChangedDetails, PriorityChangedDetails, TaskDeletedDetails
]

ACTIVITY_DETAIL_MODELS: Dict[str, Type[BaseModel]] = {
    ActivityAction.TASK_CREATED.value: TaskCreatedDetails,
    ActivityAction.STATUS_CHANGED.value: StatusChangedDetails,
    ActivityAction.PRIORITY_CHANGED.value: PriorityChangedDetails,
    ActivityAction.TASK_DELETED.value: TaskDeletedDetails,
}


def serialize_activity_details(details: ActivityDetails) -> str:
    """Serialize a payload model to the JSON text stored in activity_log.details."""
    return details.model_dump_json(by_alias=True)


def parse_activity_details(action: str, raw: Optional[str]) -> Optional[Any]:
    """
    Parse stored activity details back into a plain dict.

    Known action kinds are validated against their payload model. Rows that
    fail to parse are preserved as ``{"_raw": ..., "_parse_error": True}``
    instead of raising.
    """
    if raw is None:
        return None
    model = ACTIVITY_DETAIL_MODELS.get(action)
    try:
        if model is None:
            return json.loads(raw)
        return model.model_validate_json(raw).model_dump(by_alias=True)
    except ValueError:
        return {"_raw": raw, "_parse_error": True}


# HTTP request models


class ProjectCreate(BaseModel):
    """Request model for creating a project."""

    name: str = Field(min_length=1, max_length=200, description="Project name")
    description: Optional[str] = Field(None, description="Project description")
    repo_url: Optional[str] = Field(None, max_length=500, description="Repository URL")


class ProjectUpdate(BaseModel):
    """Request model for partial project updates. Unset fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    repo_url: Optional[str] = Field(None, max_length=500)


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    project_id: str = Field(min_length=1, description="Owning project ID")
    title: str = Field("Untitled Task", max_length=500)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee: Optional[str] = Field(None, max_length=100)
    due_date: Optional[str] = Field(None, description="Due date (ISO 8601)")
    parent_task_id: Optional[str] = Field(None, description="Parent task ID for subtasks")


class TaskUpdate(BaseModel):
    """Request model for partial task updates. Unset fields are left unchanged."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee: Optional[str] = Field(None, max_length=100)
    due_date: Optional[str] = None
    parent_task_id: Optional[str] = None


class TaskReorder(BaseModel):
    """Request model for moving a task within or across columns."""

    task_id: str = Field(min_length=1)
    new_status: TaskStatus
    new_position: Optional[int] = Field(None, ge=0, description="Target index; omit to append")


class LabelCreate(BaseModel):
    """Request model for creating a label."""

    project_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=50)
    color: str = Field(DEFAULT_LABEL_COLOR, pattern=LABEL_COLOR_PATTERN)


class LabelUpdate(BaseModel):
    """Request model for partial label updates."""

    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=LABEL_COLOR_PATTERN)


class LabelAssignment(BaseModel):
    """Request model for assigning a label to a task."""

    task_id: str = Field(min_length=1)
    label_id: str = Field(min_length=1)


class CommentCreate(BaseModel):
    """Request model for adding a comment to a task."""

    task_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    author: str = Field("user", max_length=100)


# Response envelopes


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    database_connected: bool
    timestamp: str
